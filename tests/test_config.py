"""
Unit tests for devmemory.config

Priority order: environment variables > YAML file > built-in defaults.
"""

from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from devmemory.config import Config, _DEFAULTS, _find_config_file, _load_yaml


def _clean_env():
    return {k: v for k, v in os.environ.items() if not k.startswith("DEVMEM_")}


class TestConfigDefaults(unittest.TestCase):

    def test_defaults(self):
        with patch.dict(os.environ, _clean_env(), clear=True):
            cfg = Config()
        self.assertEqual(cfg.DB_PATH, os.path.expanduser(_DEFAULTS["db_path"]))
        self.assertEqual(cfg.EMBEDDING_MODEL, "sentence-transformers/all-MiniLM-L6-v2")
        self.assertEqual(cfg.DUPLICATE_THRESHOLD, 0.9)
        self.assertEqual(cfg.SAME_REPO_BOOST, 0.15)
        self.assertEqual(cfg.SIMILAR_STACK_BOOST, 0.08)
        self.assertEqual(cfg.STACK_SIMILARITY_THRESHOLD, 0.7)
        self.assertEqual(cfg.SIMILARITY_WEIGHT, 0.7)
        self.assertEqual(cfg.RECALL_LIMIT, 5)
        self.assertEqual(cfg.MERGE_THRESHOLD, 0.8)
        self.assertFalse(cfg.INDEX_INCLUDE_TESTS)
        self.assertEqual(cfg.INDEX_EXCLUDE, [])
        self.assertEqual(cfg.LOG_LEVEL, "WARNING")


class TestConfigPriority(unittest.TestCase):

    def test_yaml_overrides_defaults(self):
        yaml_data = {
            "db_path": "/tmp/x/memory.db",
            "recall_limit": "7",
            "index_include_tests": True,
            "index_exclude": ["generated/**"],
            "log_level": "info",
        }
        with patch.dict(os.environ, _clean_env(), clear=True):
            cfg = Config(yaml_data)
        self.assertEqual(cfg.DB_PATH, "/tmp/x/memory.db")
        self.assertEqual(cfg.RECALL_LIMIT, 7)
        self.assertTrue(cfg.INDEX_INCLUDE_TESTS)
        self.assertEqual(cfg.INDEX_EXCLUDE, ["generated/**"])
        self.assertEqual(cfg.LOG_LEVEL, "INFO")

    def test_env_overrides_yaml(self):
        env = _clean_env()
        env.update({
            "DEVMEM_RECALL_LIMIT": "9",
            "DEVMEM_DUPLICATE_THRESHOLD": "0.95",
            "DEVMEM_INDEX_INCLUDE_TESTS": "false",
            "DEVMEM_INDEX_EXCLUDE": "a/**, b ,",
        })
        with patch.dict(os.environ, env, clear=True):
            cfg = Config({"recall_limit": 7, "index_include_tests": True, "index_exclude": ["x"]})
        self.assertEqual(cfg.RECALL_LIMIT, 9)
        self.assertEqual(cfg.DUPLICATE_THRESHOLD, 0.95)
        self.assertFalse(cfg.INDEX_INCLUDE_TESTS)
        self.assertEqual(cfg.INDEX_EXCLUDE, ["a/**", "b"])

    def test_invalid_exclude_ignored(self):
        with patch.dict(os.environ, _clean_env(), clear=True):
            cfg = Config({"index_exclude": "not-a-list"})
        self.assertEqual(cfg.INDEX_EXCLUDE, [])


class TestConfigFile(unittest.TestCase):

    def test_load_explicit_file(self):
        import tempfile
        with tempfile.TemporaryDirectory() as d:
            path = os.path.join(d, "custom.yaml")
            with open(path, "w") as fh:
                fh.write("merge_threshold: 0.85\nwatch_debounce: 2\n")
            with patch.dict(os.environ, _clean_env(), clear=True):
                cfg = Config.load(path)
        self.assertEqual(cfg.MERGE_THRESHOLD, 0.85)
        self.assertEqual(cfg.WATCH_DEBOUNCE, 2.0)

    def test_missing_explicit_file(self):
        self.assertIsNone(_find_config_file("/nonexistent/devmemory.yaml"))

    def test_bad_yaml_is_empty(self):
        import tempfile
        with tempfile.TemporaryDirectory() as d:
            path = os.path.join(d, "bad.yaml")
            with open(path, "w") as fh:
                fh.write("key: [unclosed\n")
            self.assertEqual(_load_yaml(path), {})
            with open(path, "w") as fh:
                fh.write("- just\n- a list\n")
            self.assertEqual(_load_yaml(path), {})

    def test_finds_file_in_cwd(self):
        import tempfile
        cwd = os.getcwd()
        with tempfile.TemporaryDirectory() as d:
            path = os.path.join(d, ".devmemory.yaml")
            with open(path, "w") as fh:
                fh.write("recall_limit: 3\n")
            os.chdir(d)
            try:
                found = _find_config_file()
            finally:
                os.chdir(cwd)
        self.assertEqual(os.path.realpath(found), os.path.realpath(path))


if __name__ == "__main__":
    unittest.main()
