APP_NAME = "Agile Bloom"
APP_VERSION = "1.0.0"
DEFAULT_CORS_ALLOW_ORIGINS = [
	"http://localhost",
	"http://127.0.0.1",
	"http://localhost:3000",
]
DEFAULT_TRUSTED_HOSTS = [
	"127.0.0.1",
	"localhost",
	"testserver",
]
DEFAULT_PERSONA_DB_PATH = "agile_bloom_personas.db"
SQLITE_BUSY_TIMEOUT_MS = 5000

ROLE_SYSTEM = "System"
ROLE_USER = "User"
ROLE_ENGINEER = "Engineer"
ROLE_ARTIST = "Artist"
ROLE_LINGUIST = "Linguist"
ROLE_SCRUM_LEADER = "Scrum Leader"

RESERVED_ROLES = (ROLE_SYSTEM, ROLE_USER)
DEFAULT_ROSTER = (
	ROLE_ENGINEER,
	ROLE_ARTIST,
	ROLE_LINGUIST,
	ROLE_SCRUM_LEADER,
)

DEFAULT_NUM_THOUGHTS = 1
DEFAULT_HISTORY_TURNS = 10

RATE_LIMIT_MAX_MESSAGES_PER_WINDOW = 5
RATE_LIMIT_WINDOW_SECONDS = 10.0

SEQUENTIAL_CALL_DELAY_SECONDS = 1.2
BULK_ACTION_DELAY_SECONDS = 1.5

MAX_RETRIES = 3
RETRY_BASE_DELAY_SECONDS = 1.0
RETRY_JITTER_SECONDS = 1.0
PROVIDER_TIMEOUT_SECONDS = 60.0

MAX_MEMORY_ENTRIES = 20

MAX_ATTACHMENT_BYTES = 5 * 1024 * 1024
SUPPORTED_IMAGE_MIME_TYPES = ("image/png", "image/jpeg", "image/gif", "image/webp")
SUPPORTED_TEXT_MIME_TYPES = ("text/plain", "text/markdown")

DEFAULT_AUTO_MODE_DELAY_SECONDS = 7
MIN_AUTO_MODE_DELAY_SECONDS = 3
MAX_AUTO_MODE_DELAY_SECONDS = 30

ID_PREFIX_LENGTH = 6

QUESTION_MIN_LENGTH = 20

SESSION_TTL_SECONDS = 6 * 60 * 60

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
MISTRAL_BASE_URL = "https://api.mistral.ai/v1"

PROVIDER_KEY_ENV = {
	"OpenAI": "OPENAI_API_KEY",
	"OpenRouter": "OPENROUTER_API_KEY",
	"Mistral": "MISTRAL_API_KEY",
	"Google": "GEMINI_API_KEY",
}
