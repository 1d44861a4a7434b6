"""
Utility functions for the sandbox execution layer
"""
import os
import re
import yaml
from typing import Any, Dict

from utils.constants import HEAD_RATIO, MAX_OUTPUT_SIZE, TRUNCATION_MARKER


def load_config(config_path: str = "config.yaml") -> Dict[str, Any]:
    """
    Load configuration from YAML file with environment variable substitution

    Supports ${VAR_NAME} syntax for environment variables
    """
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        config_str = f.read()

    def replace_env(match):
        var_name = match.group(1)
        value = os.getenv(var_name)
        if value is None:
            raise ValueError(f"Environment variable {var_name} is not set")
        return value

    config_str = re.sub(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}', replace_env, config_str)

    config = yaml.safe_load(config_str)
    return config or {}


def truncate_output(text: str, max_size: int = MAX_OUTPUT_SIZE) -> str:
    """Keep the head and tail of oversized output, joined by a marker line.

    A quarter of the room goes to the head and the rest to the tail.
    """
    if len(text) <= max_size:
        return text

    room = max(0, max_size - len(TRUNCATION_MARKER))
    head_size = int(room * HEAD_RATIO)
    tail_size = room - head_size
    tail = text[-tail_size:] if tail_size > 0 else ""
    return text[:head_size] + TRUNCATION_MARKER + tail


def exc_text(err: BaseException) -> str:
    """Readable text for an exception, falling back to its class name."""
    text = str(err or "").strip()
    if text:
        return text
    return err.__class__.__name__
