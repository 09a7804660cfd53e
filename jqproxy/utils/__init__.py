"""Utility functions for jqproxy."""

from jqproxy.utils.env import load_env_file_if_present, parse_env_line, read_env_file

__all__ = ["load_env_file_if_present", "parse_env_line", "read_env_file"]
