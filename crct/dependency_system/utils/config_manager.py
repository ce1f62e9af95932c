"""
Project configuration: a .crct.config.json file at the project root, which may
carry comments, merged over built-in defaults.
"""

import copy
import json
import os
from typing import Dict, List, Any, Optional
import logging

from jsonc_parser.parser import JsoncParser
from jsonc_parser.errors import ParserError

from crct.dependency_system.utils.path_utils import CONFIG_FILENAME, normalize_path, get_project_root

logger = logging.getLogger(__name__)

# Default configuration values
DEFAULT_CONFIG = {
    "excluded_dirs": [
        "__pycache__",
        ".git",
        ".idea",
        "__MACOSX",
        "node_modules",
        "venv",
        "env",
        ".venv",
        "dist",
        "build"
    ],
    "excluded_extensions": [
        ".pyc",
        ".pyo",
        ".pyd",
        ".DS_Store",
        ".o",
        ".so",
        ".dll",
        ".exe",
        ".bak"
    ],
    "code_root_directories": [],
    "doc_directories": ["docs"],
    "character_priorities": {
        "x": 100,
        "d": 90,
        "S": 80,
        ">": 70,
        "<": 70,
        "s": 60,
        "o": 50,
        "n": 40,
        "p": 30,
        ".": 0
    },
    "paths": {
        "memory_dir": "crct_docs",
        "backups_dir": "crct_docs/backups"
    }
}


class ConfigManager:
    """
    Process-wide access to the project configuration.

    The file is read on first access; reload() re-reads it, optionally for a
    different project root.
    """

    _instance = None

    def __new__(cls):
        """Singleton: every ConfigManager() call returns the same instance."""
        if cls._instance is None:
            cls._instance = super(ConfigManager, cls).__new__(cls)
            cls._instance._config = None
            cls._instance._config_path = None
        return cls._instance

    @property
    def config(self) -> Dict[str, Any]:
        """Configuration dictionary, loaded on first access."""
        if self._config is None:
            self._load_config()
        return self._config

    @property
    def config_path(self) -> str:
        """Path to the configuration file at the project root."""
        if self._config_path is None:
            self._config_path = normalize_path(os.path.join(get_project_root(), CONFIG_FILENAME))
        return self._config_path

    @property
    def project_root(self) -> str:
        return os.path.dirname(self.config_path)

    def reload(self, project_root: Optional[str] = None) -> None:
        """
        Drop the loaded configuration so it is read again on next access.

        Args:
            project_root: Optional project root to bind to instead of discovering it
        """
        self._config = None
        self._config_path = normalize_path(os.path.join(project_root, CONFIG_FILENAME)) if project_root else None

    def _load_config(self) -> None:
        """Load configuration from file or create default."""
        try:
            if os.path.exists(self.config_path):
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    loaded = JsoncParser.parse_str(f.read())
                if not isinstance(loaded, dict):
                    raise ValueError("top-level value must be an object")
                self._config = copy.deepcopy(DEFAULT_CONFIG)
                self._deep_update(self._config, loaded)
            else:
                self._config = copy.deepcopy(DEFAULT_CONFIG)
                self._save_config()
        except (OSError, ParserError, TypeError, ValueError) as e:
            logger.error(f"Error loading configuration from {self.config_path}: {e}")
            self._config = copy.deepcopy(DEFAULT_CONFIG)

    def _save_config(self) -> bool:
        """
        Save configuration to file.

        Returns:
            True if successful, False otherwise
        """
        try:
            os.makedirs(os.path.dirname(self.config_path), exist_ok=True)
            with open(self.config_path, 'w', encoding='utf-8') as f:
                json.dump(self._config, f, indent=2)
            return True
        except OSError as e:
            logger.error(f"Error writing configuration file {self.config_path}: {e}")
            return False

    def get_excluded_dirs(self) -> List[str]:
        """List of directory names skipped during key generation."""
        return self.config.get("excluded_dirs", DEFAULT_CONFIG["excluded_dirs"])

    def get_excluded_extensions(self) -> List[str]:
        """List of file extensions skipped during key generation."""
        return self.config.get("excluded_extensions", DEFAULT_CONFIG["excluded_extensions"])

    def get_code_root_directories(self) -> List[str]:
        """Code roots, relative to the project root."""
        return self.config.get("code_root_directories", [])

    def get_doc_directories(self) -> List[str]:
        """Documentation roots, relative to the project root."""
        return self.config.get("doc_directories", DEFAULT_CONFIG["doc_directories"])

    def get_char_priority(self, dep_char: str) -> int:
        """
        Get the priority of a dependency character.

        Args:
            dep_char: Grid character ('x', '>', 'p', ...)

        Returns:
            Priority value, 0 for unknown characters
        """
        priorities = self.config.get("character_priorities", DEFAULT_CONFIG["character_priorities"])
        return priorities.get(dep_char, DEFAULT_CONFIG["character_priorities"].get(dep_char, 0))

    def get_path(self, path_type: str, default_path: Optional[str] = None) -> str:
        """
        Get a configured path, resolved against the project root.

        Args:
            path_type: Type of path ('memory_dir' or 'backups_dir')
            default_path: Default relative path if not configured

        Returns:
            Normalized absolute path
        """
        paths = self.config.get("paths", DEFAULT_CONFIG["paths"])
        path = paths.get(path_type) or default_path or DEFAULT_CONFIG["paths"].get(path_type, "")
        if not os.path.isabs(path):
            path = os.path.join(self.project_root, path)
        return normalize_path(path)

    def update_config(self, updates: Dict[str, Any]) -> bool:
        """
        Update configuration with new values.

        Args:
            updates: Dictionary of configuration updates (nested dicts are merged)

        Returns:
            True if successful, False otherwise
        """
        self._deep_update(self.config, updates)
        return self._save_config()

    def _deep_update(self, d: Dict[str, Any], u: Dict[str, Any]) -> None:
        for k, v in u.items():
            if isinstance(v, dict) and k in d and isinstance(d[k], dict):
                self._deep_update(d[k], v)
            else:
                d[k] = v

    def reset_to_defaults(self) -> bool:
        """
        Reset configuration to default values.

        Returns:
            True if successful, False otherwise
        """
        self._config = copy.deepcopy(DEFAULT_CONFIG)
        return self._save_config()
