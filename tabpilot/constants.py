# --- Execution Loop ---

MAX_STEPS = 50
CANCEL_POLL_INTERVAL = 0.1  # seconds


# --- Context Budget ---

CHARS_PER_TOKEN = 4
MAX_CONTEXT_TOKENS = 12_000
MIN_RETAINED_PAIRS = 1


# --- Provider Caching ---

GEMINI_CACHE_TTL = 3600  # seconds
GEMINI_CACHE_MIN_CHARS = 16_384
ANTHROPIC_CACHED_USER_MESSAGES = 2


# --- Defaults ---

DEFAULT_MODEL = "claude-sonnet-4-6"
OLLAMA_BASE_URL = "http://localhost:11434/v1"


# --- Memory ---

MEMORY_LOOKUP_LIMIT = 10
REFLECTION_MAX_CORRECTIONS = 1


# --- Display Limits ---

TOOL_INPUT_PREVIEW_LIMIT = 200
TOOL_RESULT_PREVIEW_LIMIT = 500
