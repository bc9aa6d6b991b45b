"""Tests for config, env loading and the collection / variable stores."""

import pytest

from reqchain import core
from reqchain.core import (
    CollectionStore,
    VariableStore,
    build_runtime_scope,
    config_path_value,
    default_header_lines,
    env_candidates,
    load_config,
    load_env,
    parse_assignment,
    resolve_collections_dir,
    resolve_config_path,
    resolve_vars_path,
)
from reqchain.errors import FileError, ValidationError


# ── Config resolution ────────────────────────────────────────────────────


class TestConfig:
    def test_explicit_path(self, project):
        (project / "custom.yaml").write_text("defaults:\n  timeout_ms: 10\n")
        assert resolve_config_path("custom.yaml") == (project / "custom.yaml").resolve()

    def test_explicit_missing_does_not_fall_through(self, project):
        (project / ".reqchain.yaml").write_text("defaults: {}\n")
        assert resolve_config_path("missing.yaml") is None

    def test_cwd_config(self, project):
        (project / "reqchain.yml").write_text("defaults: {}\n")
        assert resolve_config_path(None) == (project / "reqchain.yml").resolve()

    def test_global_fallback(self, project, global_reqchain_dir):
        (global_reqchain_dir / "config.yaml").write_text("defaults: {}\n")
        assert resolve_config_path(None) == (global_reqchain_dir / "config.yaml").resolve()

    def test_nothing_found(self, project):
        assert resolve_config_path(None) is None

    def test_load_defaults(self, project):
        path = project / ".reqchain.yaml"
        path.write_text("defaults:\n  timeout_ms: 500\n  headers:\n    X-Client: cli\n")
        config = load_config(path)
        assert config["defaults"]["timeout_ms"] == 500
        assert config["_config_dir"] == project.resolve()
        assert default_header_lines(config) == ("X-Client: cli",)

    def test_load_missing(self):
        assert load_config(None) == {"defaults": {}, "_config_dir": None}
        assert load_config("/nonexistent/config.yaml")["defaults"] == {}

    def test_invalid_yaml(self, project):
        path = project / ".reqchain.yaml"
        path.write_text("defaults: [unclosed\n")
        with pytest.raises(FileError) as exc_info:
            load_config(path)
        assert exc_info.value.code == "EPARSE"

    def test_non_mapping(self, project):
        path = project / ".reqchain.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(FileError, match="must contain a mapping"):
            load_config(path)

    def test_path_values_relative_to_config(self, project):
        sub = project / "conf"
        sub.mkdir()
        (sub / "config.yaml").write_text("defaults:\n  vars_file: state/vars.yaml\n")
        config = load_config(sub / "config.yaml")
        assert config_path_value(config, "vars_file") == sub.resolve() / "state" / "vars.yaml"
        assert resolve_vars_path(config) == sub.resolve() / "state" / "vars.yaml"
        assert config_path_value(config, "missing") is None

    def test_vars_path_default(self, project, global_reqchain_dir):
        assert resolve_vars_path({"defaults": {}}) == global_reqchain_dir / "vars.yaml"


# ── Env ──────────────────────────────────────────────────────────────────


class TestEnv:
    def test_candidate_order(self, project, global_reqchain_dir):
        paths = env_candidates("dev", "extra.env", project)
        assert paths[:3] == [project / ".env", project / "extra.env", project / ".env.dev"]
        assert paths[-1] == global_reqchain_dir / "env" / "dev.env"

    def test_later_files_override(self, project):
        (project / ".env").write_text("HOST=base\nKEEP=1\n")
        (project / ".env.dev").write_text("HOST=dev\n")
        env = load_env(profile="dev", base_dir=project, include_process_env=False)
        assert env == {"HOST": "dev", "KEEP": "1"}

    def test_profile_directory(self, project):
        (project / "environments").mkdir()
        (project / "environments" / "staging.env").write_text("HOST=staging\n")
        env = load_env(profile="staging", base_dir=project, include_process_env=False)
        assert env["HOST"] == "staging"

    def test_global_profile(self, project, global_reqchain_dir):
        (global_reqchain_dir / "env").mkdir()
        (global_reqchain_dir / "env" / "prod.env").write_text("HOST=prod\n")
        env = load_env(profile="prod", base_dir=project, include_process_env=False)
        assert env["HOST"] == "prod"

    def test_process_env_wins(self, project, monkeypatch):
        (project / ".env").write_text("REQCHAIN_TEST_HOST=file\n")
        monkeypatch.setenv("REQCHAIN_TEST_HOST", "process")
        assert load_env(base_dir=project)["REQCHAIN_TEST_HOST"] == "process"

    def test_keys_without_values_skipped(self, project):
        (project / ".env").write_text("FLAG\nA=1\n")
        assert load_env(base_dir=project, include_process_env=False) == {"A": "1"}


# ── Collections ──────────────────────────────────────────────────────────


class TestCollectionStore:
    @pytest.fixture
    def store(self, tmp_path):
        return CollectionStore(tmp_path / "collections")

    def test_create_and_list(self, store):
        assert store.create_collection("users") is True
        assert store.create_collection("users") is False
        store.create_collection("auth")
        assert store.list_collections() == ["auth", "users"]

    def test_list_without_root(self, store):
        assert store.list_collections() == []

    def test_save_and_read(self, store):
        store.create_collection("users")
        record = {"url": "http://a.test/users", "method": "GET", "extract": ["id=json.id"]}
        path = store.save_request("users", "list", record)
        assert path == store.root / "users" / "list.yaml"
        assert store.read_request("users", "list") == record
        assert store.list_requests("users") == ["list"]

    def test_save_overwrites(self, store):
        store.create_collection("users")
        store.save_request("users", "list", {"url": "http://a.test/1"})
        store.save_request("users", "list", {"url": "http://a.test/2"})
        assert store.read_request("users", "list") == {"url": "http://a.test/2"}

    def test_save_requires_collection(self, store):
        with pytest.raises(ValidationError, match='Collection "ghost" does not exist'):
            store.save_request("ghost", "x", {"url": "http://a.test"})

    def test_read_missing(self, store):
        store.create_collection("users")
        with pytest.raises(FileError) as exc_info:
            store.read_request("users", "nope")
        assert exc_info.value.code == "ENOENT"

    def test_read_invalid(self, store):
        store.create_collection("users")
        (store.root / "users" / "bad.yaml").write_text("- just\n- a list\n")
        with pytest.raises(FileError) as exc_info:
            store.read_request("users", "bad")
        assert exc_info.value.code == "EPARSE"

    def test_list_missing_collection(self, store):
        with pytest.raises(FileError):
            store.list_requests("ghost")

    @pytest.mark.parametrize("name", ["", "../up", "a b", "a/b"])
    def test_invalid_names(self, store, name):
        with pytest.raises(ValidationError):
            store.create_collection(name)

    def test_dir_resolution_prefers_cwd(self, project, global_reqchain_dir):
        assert resolve_collections_dir({"defaults": {}}) == global_reqchain_dir / "collections"
        (project / "collections").mkdir()
        assert resolve_collections_dir({"defaults": {}}) == (project / "collections").resolve()

    def test_dir_cli_override(self, project):
        assert resolve_collections_dir({"defaults": {}}, "elsewhere") == core.GLOBAL_COLLECTIONS_DIR
        (project / "elsewhere").mkdir()
        assert resolve_collections_dir({"defaults": {}}, "elsewhere") == (project / "elsewhere").resolve()


# ── Variables ────────────────────────────────────────────────────────────


class TestVariables:
    def test_parse_assignment(self):
        assert parse_assignment("env.HOST=api.test") == ("env", "HOST", "api.test")
        assert parse_assignment("token = a=b ") == ("global", "token", "a=b")

    @pytest.mark.parametrize("text", ["novalue", "=x", "env.=x"])
    def test_invalid_assignment(self, text):
        with pytest.raises(ValidationError):
            parse_assignment(text)

    def test_set_load_unset(self, tmp_path):
        store = VariableStore(tmp_path / "state" / "vars.yaml")
        assert store.load() == {}
        store.set("global", "host", "api.test")
        store.set("auth", "token", "abc")
        assert store.load() == {"global": {"host": "api.test"}, "auth": {"token": "abc"}}
        assert store.unset("auth", "token") is True
        assert store.load() == {"global": {"host": "api.test"}}
        assert store.unset("auth", "token") is False

    def test_invalid_file(self, tmp_path):
        path = tmp_path / "vars.yaml"
        path.write_text("- a\n")
        with pytest.raises(FileError):
            VariableStore(path).load()


class TestRuntimeScope:
    def test_builtin_scopes(self):
        scope = build_runtime_scope({"auth": {"token": "t"}, "runtime": {"stale": 1}}, {"HOST": "h"})
        assert scope.get("auth", "token") == "t"
        assert scope.get("env", "HOST") == "h"
        assert scope["global"] == {}
        assert scope["runtime"] == {}
        assert scope["sequence"] == {}
        assert scope["filter"] == {}
