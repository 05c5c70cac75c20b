from chatsync.utils.env_helper import env_bool, env_float, env_int, env_none_or_str


MONGODB_URL = env_none_or_str("MONGODB_URL", "mongodb://localhost:27017/?replicaSet=rs0")
MONGODB_DB = env_none_or_str("MONGODB_DB", "crewchat")

REDIS_URL = env_none_or_str("REDIS_URL")

FCM_SERVICE_ACCOUNT_FILE = env_none_or_str("FCM_SERVICE_ACCOUNT_FILE")
FCM_PROJECT_ID = env_none_or_str("FCM_PROJECT_ID")

JWT_SECRET = env_none_or_str("JWT_SECRET", "change-me")
JWT_ALGORITHM = env_none_or_str("JWT_ALGORITHM", "HS256")

LOG_LEVEL = env_none_or_str("LOG_LEVEL", "INFO")
LOG_JSON = env_bool("LOG_JSON", False)

# chat sync tuning
MESSAGES_PER_LOAD = env_int("MESSAGES_PER_LOAD", 20)
USER_BATCH_LIMIT = env_int("USER_BATCH_LIMIT", 10)
USER_FETCH_MAX_RETRIES = env_int("USER_FETCH_MAX_RETRIES", 3)
USER_FETCH_RETRY_DELAY = env_float("USER_FETCH_RETRY_DELAY", 1.0)
TYPING_TIMEOUT = env_float("TYPING_TIMEOUT", 1.0)
CACHE_TTL = env_float("CACHE_TTL", 300.0)
LISTENER_RETRY_DELAY = env_float("LISTENER_RETRY_DELAY", 1.0)
MAX_MESSAGE_LENGTH = env_int("MAX_MESSAGE_LENGTH", 1000)
MAX_POLL_OPTIONS = env_int("MAX_POLL_OPTIONS", 10)
