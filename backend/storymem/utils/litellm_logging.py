"""
LiteLLM Logging Configuration

Keeps LiteLLM and its HTTP stack from flooding the application log.
"""

import logging
import os

NOISY_LOGGERS = [
    "litellm",
    "LiteLLM",
    "litellm.http_handler",
    "litellm.litellm_logging",
    "litellm.cost_calculator",
    "litellm.utils",
    "openai._base_client",
    "httpx",
    "httpcore",
    "httpcore.connection",
    "httpcore.http11",
]


def configure_litellm_logging():
    """Silence LiteLLM debug output; call before the first completion."""
    os.environ.setdefault("LITELLM_LOG", "ERROR")
    os.environ.setdefault("LITELLM_SUPPRESS_DEBUG_INFO", "true")
    os.environ.setdefault("LITELLM_DROP_PARAMS", "true")

    for logger_name in NOISY_LOGGERS:
        logger = logging.getLogger(logger_name)
        logger.setLevel(logging.ERROR)
        logger.propagate = False
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)

    import litellm

    litellm.set_verbose = False
    litellm.suppress_debug_info = True
    litellm.drop_params = True
