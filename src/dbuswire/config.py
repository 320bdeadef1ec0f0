"""Pydantic configuration models for dbuswire.

These models are for user-facing configuration only. They are validated once
when a ``Marshaller`` is created and are not consulted field-by-field through
pydantic in the hot path.

Wire value classes remain as @dataclass(frozen=True, slots=True) for performance.
"""

from __future__ import annotations

from typing import Final

from pydantic import BaseModel, ConfigDict, Field

# The bus caps a single array at 64 MiB.
MAX_ARRAY_LENGTH: Final[int] = 67108864

# 32 levels of array nesting plus 32 levels of struct nesting.
MAX_NESTING_DEPTH: Final[int] = 64


class MarshallingConfig(BaseModel):
    """Limits applied while marshalling and demarshalling values.

    Attributes:
        max_array_length: Largest number of elements a single array, dict or
            byte string may carry (must be positive)
        max_depth: Deepest container nesting accepted (must be positive)
    """

    model_config = ConfigDict(frozen=True)

    max_array_length: int = Field(
        default=MAX_ARRAY_LENGTH,
        gt=0,
        description="Maximum number of elements in one array",
    )
    max_depth: int = Field(
        default=MAX_NESTING_DEPTH,
        gt=0,
        description="Maximum container nesting depth",
    )


DEFAULT_CONFIG: Final[MarshallingConfig] = MarshallingConfig()
