"""
Dispatch outcomes — the closed set of results one processor run can produce.

  HardError    request cannot be attributed; goes to the error notifier only
  SoftFailure  attributable but not delivered; goes to storage only
  Delivered    accepted by the provider; goes to storage
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from models.mutations import StorageDirective
from models.schemas import ErrorKind


@dataclass(frozen=True)
class HardError:
    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class SoftFailure:
    kind: ErrorKind
    message: str
    mutations: StorageDirective


@dataclass(frozen=True)
class Delivered:
    provider_message_id: Optional[str]
    mutations: StorageDirective


DispatchOutcome = Union[HardError, SoftFailure, Delivered]
