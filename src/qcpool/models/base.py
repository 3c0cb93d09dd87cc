# Copyright (c) Syntropy Systems
"""Shared Pydantic model helpers for qcpool."""

from __future__ import annotations

from typing import ClassVar

from pydantic import BaseModel, ConfigDict


class QcpoolBaseModel(BaseModel):
    """Base model with shared config for qcpool schemas."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        populate_by_name=True,
    )


class FrozenModel(BaseModel):
    """Base model for records that must not change once created."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="forbid",
        frozen=True,
        populate_by_name=True,
    )
