# Copyright (c) Syntropy Systems
"""Shared Pydantic model helpers for tierbench."""

from __future__ import annotations

from typing import ClassVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class TierbenchBaseModel(BaseModel):
    """Base model with shared config for tierbench schemas.

    Fields are snake_case in Python and camelCase in the interchange JSON.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )


class ExternalModel(BaseModel):
    """Base model for JSON produced by other tools, keyed as they key it."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        populate_by_name=True,
    )


class FrozenModel(TierbenchBaseModel):
    """Base model for values that never change after creation."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
        frozen=True,
    )
