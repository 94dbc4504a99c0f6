"""
Managers for building a container's environment from env files and inline values.
"""
import os
from typing import Dict, List
from ..PARSERS.env_parser import EnvParser


class EnvironmentManager:
    """
    Manages the merging and resolution of environment variables from multiple sources.
    """
    def __init__(self, base_dir: str = "."):
        """
        Initializes the environment manager.

        :param base_dir: The base directory for resolving relative paths to env files.
        """
        self.base_dir = base_dir
        self.parser = EnvParser()

    def get_merged_environment(self,
                               explicit_env: Dict[str, str],
                               env_files: List[str]) -> Dict[str, str]:
        """
        Merges environment variables from env files and explicit definitions.
        The host process environment is not inherited.

        :param explicit_env: Inline environment from the manifest; overrides file values.
        :param env_files: Env file paths; later files override earlier ones.
        :return: The merged environment.
        :raises FileNotFoundError: If an env file does not exist.
        """
        merged_env: Dict[str, str] = {}

        for env_file in env_files:
            file_path = os.path.join(self.base_dir, env_file)
            merged_env.update(self.parser.parse(file_path))

        merged_env.update(explicit_env)
        return merged_env
