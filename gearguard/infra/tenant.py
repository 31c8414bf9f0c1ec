from __future__ import annotations

from contextvars import ContextVar

company_id_ctx: ContextVar[str | None] = ContextVar("company_id", default=None)
user_id_ctx: ContextVar[str | None] = ContextVar("user_id", default=None)


def set_request_context(company_id: str | None, user_id: str | None) -> None:
    company_id_ctx.set(company_id)
    user_id_ctx.set(user_id)


def get_company_id() -> str | None:
    return company_id_ctx.get()


def get_user_id() -> str | None:
    return user_id_ctx.get()
