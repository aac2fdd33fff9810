"""Shared base for Shelly result models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class ShellyModel(BaseModel):
    """Result model that keeps fields newer firmware adds."""

    model_config = ConfigDict(extra="allow")


class SetConfigResult(ShellyModel):
    restart_required: bool = False


class Revision(ShellyModel):
    rev: int | None = None
