"""Execution outcomes returned by node executors.

A discriminated union of frozen dataclasses. The scheduler interprets each
variant: ``Output`` continues on the default port, ``Branch`` continues on
exactly one port, ``Suspend`` parks the node until human input arrives, and
``Fail`` hands the error to the owning construct's policy.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from pathway.graph.node import DEFAULT_PORT


@dataclass(frozen=True)
class Output:
    """The node produced ``value`` on its default port."""

    value: Any = None
    details: dict[str, Any] = field(default_factory=dict)
    kind: Literal["output"] = "output"

    @property
    def port(self) -> str:
        return DEFAULT_PORT


@dataclass(frozen=True)
class Branch:
    """The node selected ``port``; only edges leaving that port continue."""

    port: str
    value: Any = None
    details: dict[str, Any] = field(default_factory=dict)
    kind: Literal["branch"] = "branch"


@dataclass(frozen=True)
class Suspend:
    """The node needs external input before it can produce a value."""

    reason: str
    expires_at: datetime | None = None
    request: dict[str, Any] = field(default_factory=dict)
    # Maps delivered input to the node's output; None outputs the input as-is
    complete: Callable[[Any], Any] | None = None
    kind: Literal["suspend"] = "suspend"


@dataclass(frozen=True)
class Fail:
    """The node failed with ``error``."""

    error: BaseException
    kind: Literal["fail"] = "fail"

    @property
    def reason(self) -> str:
        return str(self.error) or type(self.error).__name__


ExecutionOutcome = Output | Branch | Suspend | Fail
