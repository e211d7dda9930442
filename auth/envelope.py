"""
auth/envelope.py -- Uniform result shape for every orchestrator operation.

Callers branch on code (200 success, 400 failure) and never see an exception.
Pydantic v2 model so the envelope serializes straight to JSON for the CLI and
for any HTTP layer a consumer puts in front of the service.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

OK = 200
ERROR = 400


class Envelope(BaseModel):
    code: int
    message: str
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.code == OK


def ok(message: str, data: dict[str, Any] | None = None) -> Envelope:
    return Envelope(code=OK, message=message, data=data or {})


def error(message: str) -> Envelope:
    return Envelope(code=ERROR, message=message, data={})
