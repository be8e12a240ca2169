"""
Configuration for the Task Implementation Engine backend
"""
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# API Configuration
# Only required when the default code oracle is built (see implementation.tools.code_oracle)
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")

# Backups live under <project>/<BACKUP_ROOT_NAME>/backups/<task_id>
BACKUP_ROOT_NAME = os.getenv("BACKUP_ROOT_NAME", ".ai-buddy")

# AI Configuration - Using Gemini
AI_MODEL = os.getenv("AI_MODEL", "gemini-2.0-flash-exp")
AI_TEMPERATURE = float(os.getenv("AI_TEMPERATURE", "0.3"))
AI_REQUEST_TIMEOUT = int(os.getenv("AI_REQUEST_TIMEOUT", "120"))  # seconds
AI_MAX_RETRIES = int(os.getenv("AI_MAX_RETRIES", "2"))

# Implementation engine defaults (overridable per run)
IMPLEMENTATION_DRY_RUN = _env_bool("IMPLEMENTATION_DRY_RUN", False)
IMPLEMENTATION_AUTO_APPROVE = _env_bool("IMPLEMENTATION_AUTO_APPROVE", False)
IMPLEMENTATION_ENABLE_BACKUPS = _env_bool("IMPLEMENTATION_ENABLE_BACKUPS", True)
IMPLEMENTATION_RUN_TESTS = _env_bool("IMPLEMENTATION_RUN_TESTS", True)
IMPLEMENTATION_VALIDATE_SYNTAX = _env_bool("IMPLEMENTATION_VALIDATE_SYNTAX", True)
IMPLEMENTATION_CREATE_COMMIT = _env_bool("IMPLEMENTATION_CREATE_COMMIT", False)
IMPLEMENTATION_MAX_RETRIES = int(os.getenv("IMPLEMENTATION_MAX_RETRIES", "2"))
IMPLEMENTATION_TIMEOUT_MS = int(os.getenv("IMPLEMENTATION_TIMEOUT_MS", "300000"))  # 5 minutes
# Finished runs and their event history are dropped after this long
IMPLEMENTATION_RETENTION_SECONDS = int(os.getenv("IMPLEMENTATION_RETENTION_SECONDS", "3600"))

# Project tooling (run inside the target project)
TEST_COMMAND = os.getenv("TEST_COMMAND", "npm test")
TYPE_CHECK_COMMAND = os.getenv("TYPE_CHECK_COMMAND", "npm run type-check")
LINT_COMMAND = os.getenv("LINT_COMMAND", "npm run lint")
TSC_COMMAND = os.getenv("TSC_COMMAND", "npx --no-install tsc --noEmit")
PYTHON_SYNTAX_COMMAND = os.getenv("PYTHON_SYNTAX_COMMAND", "python3 -m py_compile")

# Timeouts (milliseconds)
COMMAND_TIMEOUT_MS = int(os.getenv("COMMAND_TIMEOUT_MS", "60000"))
TEST_TIMEOUT_MS = int(os.getenv("TEST_TIMEOUT_MS", "120000"))
SYNTAX_CHECK_TIMEOUT_MS = int(os.getenv("SYNTAX_CHECK_TIMEOUT_MS", "10000"))
TOOLING_TIMEOUT_MS = int(os.getenv("TOOLING_TIMEOUT_MS", "30000"))
VALIDATION_TEST_TIMEOUT_MS = int(os.getenv("VALIDATION_TEST_TIMEOUT_MS", "60000"))
GIT_TIMEOUT_MS = int(os.getenv("GIT_TIMEOUT_MS", "10000"))

# Planner context limits
MAX_RELATED_FILES = 5
MAX_EXISTING_FILES = 50

# Server Configuration
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:8000",
    "http://127.0.0.1:8000",
]
