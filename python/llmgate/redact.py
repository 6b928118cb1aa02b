"""Log guard for gateway events.

Never-log policy:
- API keys (plaintext, headers, bearer tokens)
- Message content, prompts, tool arguments
- Raw request/response bodies

Allowed (with suffix):
- _chars, _length: length of text
- _sha256, _hash: hash of text
- Token counts, provider request ID, latency
"""

import structlog

from llmgate.config import Environment, get_settings

FORBIDDEN_KEYS = frozenset(
    {
        "prompt",
        "content",
        "messages",
        "api_key",
        "authorization",
        "bearer",
        "token",
        "secret",
        "arguments",
        "raw_body",
        "body",
    }
)

REDACTED_SUFFIXES = ("_sha256", "_hash", "_length", "_chars")

STRICT_ENVIRONMENTS = frozenset({Environment.LOCAL, Environment.TEST})


def _has_redacted_suffix(key: str) -> bool:
    return any(key.endswith(suffix) for suffix in REDACTED_SUFFIXES)


def safe_kv(*, _env: Environment | str | None = None, **kwargs) -> dict:
    """Validate that no forbidden keys are present unless already redacted.

    Raises ValueError in local/test environments if a forbidden key is used
    without a redacted suffix. Elsewhere, logs a warning and drops the key.

    Usage:
        logger.info("llm.request.started", **safe_kv(
            _env=settings.llmgate_env,
            provider="openai",
            model_name="gpt-4o",
            message_chars=1234,       # OK: _chars suffix
            # content="hello world",  # BLOCKED: forbidden key
        ))

    Args:
        _env: Environment of the caller's settings. If None, get_settings() decides.
        **kwargs: Keyword arguments to validate and return.

    Returns:
        The same kwargs dict, after validation.

    Raises:
        ValueError: In local/test, if a forbidden key is used without redacted suffix.
    """
    violations = [key for key in kwargs if key in FORBIDDEN_KEYS and not _has_redacted_suffix(key)]

    if violations:
        msg = f"Forbidden log keys without redacted suffix: {violations}"
        env = Environment(_env) if _env is not None else get_settings().llmgate_env
        if env in STRICT_ENVIRONMENTS:
            raise ValueError(msg)

        _logger = structlog.get_logger("llmgate.redact")
        _logger.warning("safe_kv_violation", forbidden_keys=violations)
        for key in violations:
            kwargs.pop(key)

    return kwargs
