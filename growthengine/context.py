from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
sweep_name_var: ContextVar[str | None] = ContextVar("sweep_name", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_sweep_name(value: str | None) -> Token[str | None]:
    return sweep_name_var.set(value)


def reset_sweep_name(token: Token[str | None]) -> None:
    sweep_name_var.reset(token)


def get_sweep_name() -> str | None:
    return sweep_name_var.get()
