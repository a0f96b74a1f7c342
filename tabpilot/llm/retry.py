from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from tabpilot.logging import get_logger

_logger = get_logger(__name__)

MAX_ATTEMPTS = 3


def status_code_of(exc: BaseException) -> int | None:
    from anthropic import APIStatusError as AnthropicError
    from google.genai.errors import APIError as GeminiError
    from openai import APIStatusError as OpenAIError

    if isinstance(exc, AnthropicError | OpenAIError):
        return exc.status_code
    if isinstance(exc, GeminiError):
        return exc.code
    return None


def is_retryable(exc: BaseException) -> bool:
    code = status_code_of(exc)
    if code is None:
        return False
    return code in {408, 409, 429} or code >= 500


def _log_retry(retry_state) -> None:
    _logger.warning(
        "Provider call failed (attempt %d/%d), retrying: %s",
        retry_state.attempt_number,
        MAX_ATTEMPTS,
        retry_state.outcome.exception(),
    )


@retry(
    retry=retry_if_exception(is_retryable),
    stop=stop_after_attempt(MAX_ATTEMPTS),
    wait=wait_exponential_jitter(initial=0.5, max=8, jitter=2),
    reraise=True,
    before_sleep=_log_retry,
)
async def with_retry(fn, *args, **kwargs):
    return await fn(*args, **kwargs)
