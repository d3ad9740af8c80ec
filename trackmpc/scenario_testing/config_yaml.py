"""
Loading and merging of YAML configuration.
"""

import copy
import os

import yaml


def load_yaml(file):
    """
    Load a yaml configuration file.

    Args:
        file (str): Path to the yaml file.

    Returns:
        dict: Parsed configuration (empty dict for an empty file).
    """
    if not os.path.exists(file):
        raise FileNotFoundError(f"Config file not found {file!r}")
    with open(file, 'r', encoding='utf-8') as stream:
        params = yaml.safe_load(stream)
    return params or {}


def merge_config(defaults, overrides):
    """
    Recursively merge ``overrides`` on top of ``defaults``.

    Nested dicts are merged key by key; any other value replaces the default.
    Neither argument is modified.

    Args:
        defaults (dict): Default parameters.
        overrides (dict): User parameters, may be None.

    Returns:
        dict: Merged copy.
    """
    merged = copy.deepcopy(defaults)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged
