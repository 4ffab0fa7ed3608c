"""
Configuration management module.

This module handles loading configuration from environment variables
and .env files, providing a centralized configuration object.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from gemstone_analysis.model_config import get_model_config
from gemstone_analysis.models import Config

logger = logging.getLogger(__name__)


def get_project_root() -> Path:
    """
    Get the project root directory (the folder holding the package).

    Returns:
        Path: Path to the project root directory
    """
    return Path(__file__).parent.parent


def load_config(env_file: Optional[str] = None) -> Config:
    """
    Load configuration from environment variables and defaults.

    Args:
        env_file: Optional path to .env file. If None, looks for .env in the
            working directory and then in the project root

    Returns:
        Config: Configuration object with all settings

    Raises:
        ValueError: If required configuration is missing or the model is unknown
    """
    if env_file:
        load_dotenv(env_file)
        logger.debug(f"Loaded environment variables from {env_file}")
    else:
        local_env = Path.cwd() / ".env"
        root_env = get_project_root() / ".env"
        if local_env.exists():
            load_dotenv(local_env)
            logger.debug(f"Loaded environment variables from {local_env}")
        elif root_env.exists():
            load_dotenv(root_env)
            logger.debug(f"Loaded environment variables from {root_env}")

    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise ValueError(
            "OPENAI_API_KEY not found in environment variables. "
            "Please set it in your .env file or environment."
        )

    model_name = os.getenv("OPENAI_VISION_MODEL", "gpt-5-mini")
    # Unknown models are rejected before any item is processed
    get_model_config(model_name)

    config = Config(
        openai_api_key=api_key,
        openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
        model_name=model_name,
        request_timeout=float(os.getenv("OPENAI_TIMEOUT", "180")),
        db_name=os.getenv("DB_NAME", "postgres"),
        db_user=os.getenv("DB_USER", "postgres"),
        db_password=os.getenv("DB_PASSWORD", ""),
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=os.getenv("DB_PORT", "5432"),
        image_fetch_timeout=float(os.getenv("IMAGE_FETCH_TIMEOUT", "30")),
        image_fetch_attempts=int(os.getenv("IMAGE_FETCH_ATTEMPTS", "3")),
        image_fetch_backoff=float(os.getenv("IMAGE_FETCH_BACKOFF", "0.5")),
        prompt_file=os.getenv("PROMPT_FILE") or None,
        few_shot_file=os.getenv("FEW_SHOT_FILE") or None,
        primary_image_policy=os.getenv("PRIMARY_IMAGE_POLICY", "flag").lower(),
        primary_image_min_score=float(os.getenv("PRIMARY_IMAGE_MIN_SCORE", "60")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_dir=os.getenv("LOG_DIR", "logs"),
    )

    logger.info("Configuration loaded successfully")
    logger.debug(
        f"Model: {config.model_name}, timeout: {config.request_timeout}s, "
        f"DB: {config.db_user}@{config.db_host}/{config.db_name}"
    )

    return config


def get_absolute_path(relative_path: str) -> Path:
    """
    Convert a relative path to an absolute path from project root.

    Absolute paths are returned unchanged; a relative path that exists under
    the working directory wins over the project root.

    Args:
        relative_path: Path relative to project root

    Returns:
        Path: Absolute path
    """
    path = Path(relative_path)
    if path.is_absolute():
        return path
    cwd_path = Path.cwd() / path
    if cwd_path.exists():
        return cwd_path
    return get_project_root() / path
