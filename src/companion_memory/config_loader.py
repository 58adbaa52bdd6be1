"""
Loading MemoryConfig from YAML files and the environment.

YAML values may reference environment variables as ``${NAME}``. A small
set of environment variables also override individual settings directly,
which is how deployments without a config file tune the memory system.
"""

from __future__ import annotations

import os
import re
from typing import Any, Callable

import chardet
import yaml
from dotenv import load_dotenv
from loguru import logger
from pydantic import ValidationError

from .config import MemoryConfig


def _env_int(value: str) -> int:
    return int(value)


def _env_float(value: str) -> float:
    return float(value)


# env var -> (section, field, parser)
ENV_OVERRIDES: list[tuple[str, str, str, Callable[[str], Any]]] = [
    ("MEMORY_TRUNK_SIZE", "window", "trunk_size", _env_int),
    ("TOP_K", "retrieval", "top_k", _env_int),
    ("SIMILARITY_THRESHOLD", "retrieval", "similarity_threshold", _env_float),
    ("EMBEDDING_MODEL", "embedding", "model", str),
    ("MEMORY_MODEL", "summarizer", "model", str),
    ("MEMORY_DB_PATH", "storage", "sqlite_db_path", str),
    ("LLM_BASE_URL", "summarizer", "base_url", str),
    ("OPENAI_API_KEY", "summarizer", "api_key", str),
    # Takes precedence over OPENAI_API_KEY when both are set
    ("LLM_API_KEY", "summarizer", "api_key", str),
]


def load_text_file_with_guess_encoding(file_path: str) -> str | None:
    """
    Load a text file with guessed encoding.

    Common encodings are tried first; chardet guesses when they all fail.

    Returns:
        The file content, or None if it could not be decoded
    """
    encodings = ["utf-8", "utf-8-sig", "gbk", "gb2312", "ascii", "cp936"]

    for encoding in encodings:
        try:
            with open(file_path, "r", encoding=encoding) as file:
                return file.read()
        except UnicodeDecodeError:
            continue

    try:
        with open(file_path, "rb") as file:
            raw_data = file.read()
        detected = chardet.detect(raw_data)
        if detected["encoding"]:
            return raw_data.decode(detected["encoding"])
    except (OSError, UnicodeDecodeError, LookupError) as e:
        logger.error(f"Error detecting encoding for config file {file_path}: {e}")
    return None


def read_yaml(config_path: str) -> dict[str, Any]:
    """
    Read a YAML file with ``${VAR}`` environment substitution.

    Raises:
        FileNotFoundError: If the file does not exist
        IOError: If the file cannot be read
        yaml.YAMLError: If the content is not valid YAML
    """
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    content = load_text_file_with_guess_encoding(config_path)
    if content is None:
        raise IOError(f"Failed to read configuration file: {config_path}")

    pattern = re.compile(r"\$\{(\w+)\}")

    def replacer(match):
        return os.getenv(match.group(1), match.group(0))

    content = pattern.sub(replacer, content)

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        logger.critical(f"Error parsing YAML file: {e}")
        raise e
    return data or {}


def apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply the supported environment variables on top of ``data``.

    Numeric values that do not parse are ignored with a warning, leaving
    the configured (or default) value in place.
    """
    for env_name, section, key, parse in ENV_OVERRIDES:
        raw = os.getenv(env_name)
        if raw is None or not raw.strip():
            continue
        try:
            value = parse(raw.strip())
        except ValueError:
            logger.warning(f"Ignoring invalid {env_name}={raw!r}")
            continue
        section_data = data.get(section) or {}
        section_data[key] = value
        data[section] = section_data
    return data


def _format_validation_error(error: ValidationError) -> str:
    """Render a ValidationError as one readable line per field."""
    error_messages = []

    for err in error.errors():
        location = " -> ".join(str(loc) for loc in err["loc"])
        error_type = err["type"]
        msg = err["msg"]
        input_value = err.get("input", "N/A")

        if error_type == "missing":
            error_messages.append(f"  - '{location}': required field is missing")
        elif error_type in ("int_parsing", "int_type", "float_parsing", "float_type"):
            error_messages.append(
                f"  - '{location}': a number is required. Current value: {input_value}"
            )
        elif error_type in ("bool_parsing", "bool_type"):
            error_messages.append(
                f"  - '{location}': true/false is required. Current value: {input_value}"
            )
        elif error_type == "value_error":
            error_messages.append(f"  - '{location}': {msg}")
        elif "greater_than" in error_type or "less_than" in error_type:
            error_messages.append(f"  - '{location}': value out of range. {msg}")
        else:
            error_messages.append(f"  - '{location}': {msg} (type: {error_type})")

    return "\n".join(error_messages)


def validate_config(config_data: dict[str, Any]) -> MemoryConfig:
    """
    Validate configuration data against MemoryConfig.

    Raises:
        ValidationError: The readable per-field summary is logged first
    """
    try:
        return MemoryConfig(**config_data)
    except ValidationError as e:
        logger.critical(
            "Memory configuration validation failed:\n"
            f"{_format_validation_error(e)}"
        )
        logger.debug(f"Configuration data keys: {list(config_data.keys())}")
        raise e


def load_config(config_path: str | None = None) -> MemoryConfig:
    """
    Build the memory configuration.

    Args:
        config_path: Optional YAML file; a top-level ``memory`` key is
            unwrapped when present

    Returns:
        Validated MemoryConfig
    """
    load_dotenv()

    data: dict[str, Any] = {}
    if config_path:
        data = read_yaml(config_path)
        if isinstance(data.get("memory"), dict):
            data = data["memory"]
        logger.info(f"Loaded memory configuration from {config_path}")

    return validate_config(apply_env_overrides(data))
