from contextvars import ContextVar

# Identifies one create_meme invocation in log lines
invocation_id: ContextVar[str | None] = ContextVar[str | None](
    "invocation_id", default=None
)
