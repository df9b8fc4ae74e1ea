"""
Configuration utilities for RegistryMatch.

Provides configuration loading, validation and logging setup for all
pipeline components.
"""

import re
import logging
import yaml
from typing import Dict, Any
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/registry_match.yaml"


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """
    Load RegistryMatch configuration from YAML file.

    Values from the file are merged over the defaults, so a partial file only
    needs to name the settings it changes.

    Args:
        config_path: Path to configuration file

    Returns:
        Configuration dictionary
    """
    try:
        config_file = Path(config_path)
        if not config_file.exists():
            logger.warning(f"Configuration file {config_path} not found, using defaults")
            return get_default_config()

        with open(config_file, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f) or {}

        merged = merge_configs(get_default_config(), config)

        logger.info(f"Loaded configuration from {config_path}")
        return merged

    except Exception as e:
        logger.error(f"Failed to load configuration from {config_path}: {e}")
        return get_default_config()


def get_default_config() -> Dict[str, Any]:
    """
    Get default RegistryMatch configuration.

    Returns:
        Default configuration dictionary
    """
    return {
        "cache": {
            "rule_ttl_seconds": 3600,
            "region_ttl_seconds": 3600
        },
        "normalization": {
            "max_passes": 4
        },
        "scoring": {
            "weights": {
                "text_match": 0.40,
                "name_similarity": 0.25,
                "address_match": 0.20,
                "region_code_match": 0.15
            },
            "thresholds": {
                "auto_match_score": 95,
                "auto_match_min_signals": 3,
                "signal_match_value": 80,
                "manual_review_score": 70
            }
        },
        "retrieval": {
            "default_limit": 5,
            "max_limit": 100
        },
        "grouping": {
            "similarity_threshold": 0.85,
            "headquarters_keywords": ["본원", "본점", "본사", "본부", "본관"],
            "protected_patterns": [r"구급\s*차"],
            "confidence": {
                "high": 0.95,
                "medium": 0.90
            }
        },
        "storage": {
            "registry_db": "data/registry.db",
            "audit_db": "data/audit.db",
            "audit_write_timeout_seconds": 0.0
        },
        "logging": {
            "level": "INFO",
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            "file": None
        }
    }


def validate_config(config: Dict[str, Any]) -> bool:
    """
    Validate RegistryMatch configuration.

    Args:
        config: Configuration dictionary

    Returns:
        True if configuration is valid, False otherwise
    """
    required_sections = ["cache", "scoring", "retrieval", "grouping", "storage"]

    for section in required_sections:
        if section not in config:
            logger.error(f"Missing required configuration section: {section}")
            return False

    # Validate scoring weights
    weights = config.get("scoring", {}).get("weights", {})
    if not isinstance(weights, dict) or not weights:
        logger.error("scoring.weights must be a non-empty mapping")
        return False

    for name, weight in weights.items():
        if not isinstance(weight, (int, float)) or not 0 <= weight <= 1:
            logger.error(f"scoring.weights.{name} must be a number between 0 and 1")
            return False

    # Validate scoring thresholds
    thresholds = config.get("scoring", {}).get("thresholds", {})
    for key in ["auto_match_score", "signal_match_value", "manual_review_score"]:
        value = thresholds.get(key)
        if not isinstance(value, (int, float)) or not 0 <= value <= 100:
            logger.error(f"scoring.thresholds.{key} must be a number between 0 and 100")
            return False

    min_signals = thresholds.get("auto_match_min_signals")
    if not isinstance(min_signals, int) or min_signals < 0:
        logger.error("scoring.thresholds.auto_match_min_signals must be a non-negative integer")
        return False

    # Validate grouping configuration
    grouping = config.get("grouping", {})
    threshold = grouping.get("similarity_threshold", 0.85)
    if not isinstance(threshold, (int, float)) or not 0 < threshold <= 1:
        logger.error("grouping.similarity_threshold must be a number in (0, 1]")
        return False

    if not isinstance(grouping.get("protected_patterns", []), list):
        logger.error("grouping.protected_patterns must be a list")
        return False

    for pattern in grouping.get("protected_patterns", []):
        try:
            re.compile(pattern)
        except (re.error, TypeError) as e:
            logger.error(f"grouping.protected_patterns entry {pattern!r} is not a valid regular expression: {e}")
            return False

    # Validate retrieval limits
    retrieval = config.get("retrieval", {})
    max_limit = retrieval.get("max_limit", 100)
    default_limit = retrieval.get("default_limit", 5)
    if not isinstance(max_limit, int) or not isinstance(default_limit, int) or not 1 <= default_limit <= max_limit:
        logger.error("retrieval.default_limit must be an integer between 1 and retrieval.max_limit")
        return False

    logger.info("Configuration validation passed")
    return True


def merge_configs(base_config: Dict[str, Any], override_config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge two configuration dictionaries.

    Args:
        base_config: Base configuration
        override_config: Override configuration

    Returns:
        Merged configuration
    """
    merged = base_config.copy()

    for key, value in override_config.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = merge_configs(merged[key], value)
        else:
            merged[key] = value

    return merged


def setup_logging(config: Dict[str, Any], level: str = None):
    """
    Configure root logging from the logging section.

    Args:
        config: Configuration dictionary
        level: Level name overriding the configured one
    """
    logging_config = config.get("logging", {})
    level_name = level or logging_config.get("level", "INFO")

    handlers = [logging.StreamHandler()]
    log_file = logging_config.get("file")
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level_name),
        format=logging_config.get("format", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
        handlers=handlers
    )
