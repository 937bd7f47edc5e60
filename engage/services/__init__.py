from engage.services.errors import (
    DispatchFailure,
    GenerationFailure,
    InvalidModeError,
    NormalizationError,
    PersistenceFailure,
    PipelineError,
    ValidationError,
)
from engage.services.events import InboundEvent, ReplyAttempt, ReplyOutcome
from engage.services.result import Result
from engage.services.state_machine import (
    AutomationMode,
    ModeScope,
    give_back_refusal,
    parse_mode,
    resolve_mode,
)
