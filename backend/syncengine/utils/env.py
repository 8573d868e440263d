import logging

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env_file() -> bool:
    """Load backend/.env into os.environ without overriding exported variables.

    WHAT:
        Thin wrapper over python-dotenv used by modules that read configuration
        at import time (database URL, token encryption key).
    WHY:
        Workers started from a shell without exported variables still pick up
        the developer's local .env, while real deployments keep precedence.

    Returns:
        True when a .env file was found and read.
    """
    loaded = load_dotenv(override=False)
    if loaded:
        logger.info("[ENV] Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("[ENV] No local .env file found")
    return loaded
