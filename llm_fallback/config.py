import os

DEFAULT_PRO_MODEL = os.getenv("DEFAULT_PRO_MODEL", "gemini-2.5-pro")
DEFAULT_FLASH_MODEL = os.getenv("DEFAULT_FLASH_MODEL", "gemini-2.5-flash")

# JSON list of {"model": ..., "action": "silent"|"prompt", "is_last_resort": bool}
FALLBACK_CHAIN = os.getenv("FALLBACK_CHAIN", "")

UPGRADE_URL = os.getenv("UPGRADE_URL", "https://goo.gle/set-up-gemini-code-assist")
API_KEY_DOCS_URL = "https://goo.gle/gemini-cli-docs-auth#gemini-api-key"
PAID_KEY_URL = "https://aistudio.google.com/apikey"

SECONDARY_API_KEY_ENV = "SECONDARY_API_KEY"
ALT_BACKEND_API_KEY_ENV = "ALT_BACKEND_API_KEY"
ALT_BACKEND_PROJECT_ENV = "ALT_BACKEND_PROJECT"
ALT_BACKEND_LOCATION_ENV = "ALT_BACKEND_LOCATION"

AUTO_FALLBACK_SETTING_KEY = "security.auth.autoFallback"
AUTH_TYPE_SETTING_KEY = "security.auth.selectedType"

# Retry delays above this are treated as a hard quota window, not backoff.
TERMINAL_RETRY_DELAY_S = float(os.getenv("TERMINAL_RETRY_DELAY_S", "120"))
