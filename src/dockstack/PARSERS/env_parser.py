"""
Parsers for .env files, backed by python-dotenv.
"""
import io
import os
from typing import Dict

from dotenv import dotenv_values


class EnvParser:
    """
    Parser for KEY=VALUE environment files.

    Later occurrences of a key override earlier ones. Keys declared without a
    value (a bare `KEY` line) are skipped.
    """
    @staticmethod
    def parse(env_path: str) -> Dict[str, str]:
        """
        Parses an .env file from a path.

        Args:
            env_path (str): Path to the .env file.

        Returns:
            Dict[str, str]: Dictionary of environment variables.

        Raises:
            FileNotFoundError: If the file does not exist.
            UnicodeDecodeError: If the file is not UTF-8.
        """
        if not os.path.isfile(env_path):
            raise FileNotFoundError(env_path)
        with open(env_path, 'r', encoding='utf-8') as f:
            content = f.read()
        return EnvParser.parse_from_string(content)

    @staticmethod
    def parse_from_string(content: str) -> Dict[str, str]:
        """
        Parses environment variables from a string.
        Handles quotes, comments, `export` prefixes and escaped characters.
        Values are taken literally; no ${VAR} expansion is applied.
        """
        values = dotenv_values(stream=io.StringIO(content), interpolate=False)
        return {key: value for key, value in values.items() if value is not None}
