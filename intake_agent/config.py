# intake_agent/config.py
import os

ORCH_API_KEY = os.environ.get("ORCH_API_KEY", "")

# OpenAI
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "")
OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL", "") or None

# generation
MODEL_MAX_TOKENS = int(os.environ.get("MODEL_MAX_TOKENS", "500"))
MODEL_TEMPERATURE = float(os.environ.get("MODEL_TEMPERATURE", "0.1"))
EXTRACTION_MAX_TOKENS = int(os.environ.get("EXTRACTION_MAX_TOKENS", "300"))
MIN_RESPONSE_LENGTH = int(os.environ.get("MIN_RESPONSE_LENGTH", "10"))

# retry / timeouts (seconds)
RETRY_ATTEMPTS = int(os.environ.get("RETRY_ATTEMPTS", "4"))
RETRY_BASE_DELAY = float(os.environ.get("RETRY_BASE_DELAY", "0.4"))
RETRY_MAX_DELAY = float(os.environ.get("RETRY_MAX_DELAY", "5.0"))
MODEL_TIMEOUT = float(os.environ.get("MODEL_TIMEOUT", "30"))
TOOL_TIMEOUT = float(os.environ.get("TOOL_TIMEOUT", "15"))

# simulated streaming
STREAM_CHUNK_SIZE = int(os.environ.get("STREAM_CHUNK_SIZE", "3"))
STREAM_CHUNK_DELAY = float(os.environ.get("STREAM_CHUNK_DELAY", "0.05"))

# Team configuration service (optional)
TEAM_API_URL = os.environ.get("TEAM_API_URL", "")
TEAM_API_KEY = os.environ.get("TEAM_API_KEY", "")
DEFAULT_TEAM_NAME = os.environ.get("DEFAULT_TEAM_NAME", "our law firm")

# Tool services (optional; local fallbacks when unset)
MATTER_API_URL = os.environ.get("MATTER_API_URL", "")
REVIEW_API_URL = os.environ.get("REVIEW_API_URL", "")
DOCUMENT_API_URL = os.environ.get("DOCUMENT_API_URL", "")
TOOLS_API_KEY = os.environ.get("TOOLS_API_KEY", "")

# Storage for matters and contact-form gate
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./intake.db")

# Logger
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
