"""Models package - re-exports for convenience."""

from backend.docpipe.models.common import (
    NO_DOC_VALUE,
    StepStatus,
    StepType,
    UpdateType,
    to_epoch_ms,
    utc_now,
)
from backend.docpipe.models.config import (
    DEFAULT_DOMAIN_CONFIG,
    DEFAULT_PIPELINE_CONFIG,
    CategoryConfig,
    DomainConfig,
    ErrorHandlingConfig,
    KeywordConfig,
    PipelineConfig,
    StepConfig,
)
from backend.docpipe.models.enrichment import (
    ChangeContext,
    DuplicationWarning,
    Enrichment,
    RelatedDoc,
    SourceAnalysis,
    StyleAnalysis,
    StyleMetrics,
)
from backend.docpipe.models.messages import (
    BatchWindow,
    Message,
    ProcessingStatus,
    ProcessingWatermark,
)
from backend.docpipe.models.pipeline import (
    ConversationThread,
    PipelineError,
    PipelineMetrics,
    PipelineResult,
    Proposal,
    RagDocument,
    RagSearchCriteria,
    StepLog,
)
from backend.docpipe.models.ruleset import ParsedRuleset, ReviewResult, TenantRuleset

__all__ = [
    "NO_DOC_VALUE",
    "StepStatus",
    "StepType",
    "UpdateType",
    "to_epoch_ms",
    "utc_now",
    "DEFAULT_DOMAIN_CONFIG",
    "DEFAULT_PIPELINE_CONFIG",
    "CategoryConfig",
    "DomainConfig",
    "ErrorHandlingConfig",
    "KeywordConfig",
    "PipelineConfig",
    "StepConfig",
    "ChangeContext",
    "DuplicationWarning",
    "Enrichment",
    "RelatedDoc",
    "SourceAnalysis",
    "StyleAnalysis",
    "StyleMetrics",
    "BatchWindow",
    "Message",
    "ProcessingStatus",
    "ProcessingWatermark",
    "ConversationThread",
    "PipelineError",
    "PipelineMetrics",
    "PipelineResult",
    "Proposal",
    "RagDocument",
    "RagSearchCriteria",
    "StepLog",
    "ParsedRuleset",
    "ReviewResult",
    "TenantRuleset",
]
