from .router import (
    DUPLICATE_JUDGEMENT_SCHEMA,
    GenerationAdapter,
    GenerationError,
    call_model,
)

__all__ = ["DUPLICATE_JUDGEMENT_SCHEMA", "GenerationAdapter", "GenerationError", "call_model"]
