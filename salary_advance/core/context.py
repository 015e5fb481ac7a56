"""Per-task correlation ids for log lines.

Set by the request middleware for HTTP traffic and by the reconciliation job
for background runs; ``-`` means unset.
"""

import contextvars

UNSET = "-"
CONTEXT_KEYS = ("tenant_id", "request_id", "job")

_vars: dict[str, contextvars.ContextVar[str]] = {
    key: contextvars.ContextVar(key, default=UNSET) for key in CONTEXT_KEYS
}


def set_tenant_id(tenant_id) -> None:
    _vars["tenant_id"].set(str(tenant_id))


def get_tenant_id() -> str:
    return _vars["tenant_id"].get()


def set_request_id(request_id: str) -> None:
    _vars["request_id"].set(request_id)


def get_request_id() -> str:
    return _vars["request_id"].get()


def set_job(job: str) -> None:
    _vars["job"].set(job)


def get_job() -> str:
    return _vars["job"].get()


def snapshot() -> dict[str, str]:
    return {key: var.get() for key, var in _vars.items()}


def clear_context() -> None:
    for var in _vars.values():
        var.set(UNSET)
