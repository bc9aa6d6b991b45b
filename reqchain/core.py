"""reqchain core - config loading, env profiles, collection and variable stores."""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import dotenv_values

from reqchain.errors import FileError, ValidationError
from reqchain.scope import DEFAULT_SCOPE, RuntimeScope, parse_scoped_key

GLOBAL_DIR = Path.home() / ".reqchain"
GLOBAL_CONFIG = GLOBAL_DIR / "config.yaml"
GLOBAL_ENV_DIR = GLOBAL_DIR / "env"
GLOBAL_VARS_FILE = GLOBAL_DIR / "vars.yaml"
GLOBAL_COLLECTIONS_DIR = GLOBAL_DIR / "collections"

CWD_CONFIG_CANDIDATES = [
    ".reqchain.yaml",
    ".reqchain.yml",
    "reqchain.yaml",
    "reqchain.yml",
]

PROFILE_DIRECTORIES = ["env", "environments", "config/env"]

# Scopes every invocation starts with, besides the stored ones.
BUILTIN_SCOPES = ("runtime", "sequence", "filter")

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def resolve_path(
    candidates: list[Path],
    default: Path | None = None,
) -> Path | None:
    """Return the first existing path from candidates, else *default*."""
    for p in candidates:
        if p.exists():
            return p.resolve()
    return default


def resolve_config_path(config_file: str | None) -> Path | None:
    """Find the config file to use.

    Resolution order:
      1. Explicit -c flag (hard, no fallthrough if missing)
      2. .reqchain.yaml (variants) in CWD
      3. ~/.reqchain/config.yaml
    """
    if config_file:
        return resolve_path([Path(config_file)])
    return resolve_path([Path(c) for c in CWD_CONFIG_CANDIDATES] + [GLOBAL_CONFIG])


def load_config(config_path: str | Path | None) -> dict:
    """Load the YAML config. Missing files give empty defaults.

    '_config_dir' is stored so relative paths in the config resolve against
    the config file's directory.
    """
    if config_path is None:
        return {"defaults": {}, "_config_dir": None}
    path = Path(config_path)
    if not path.exists():
        return {"defaults": {}, "_config_dir": None}
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise FileError(f"Invalid YAML in config file: {path}", code="EPARSE", details=str(e)) from e
    if not isinstance(data, dict):
        raise FileError(f"Config file must contain a mapping: {path}", code="EPARSE")
    return {
        "defaults": data.get("defaults") or {},
        "_config_dir": path.resolve().parent,
    }


def config_path_value(config: dict, key: str) -> Path | None:
    """A path from config defaults, relative to the config file's directory."""
    value = config.get("defaults", {}).get(key)
    if not value:
        return None
    p = Path(value).expanduser()
    config_dir = config.get("_config_dir")
    if not p.is_absolute() and config_dir:
        p = Path(config_dir) / p
    return p


def _expand(base_dir: Path, candidate: str) -> Path:
    p = Path(candidate).expanduser()
    return p if p.is_absolute() else base_dir / p


def env_candidates(
    profile: str | None = None,
    env_file: str | None = None,
    base_dir: str | Path = ".",
) -> list[Path]:
    """Env files in load order; later files override earlier ones."""
    base = Path(base_dir)
    candidates = [base / ".env"]
    if env_file:
        candidates.append(_expand(base, env_file))
    if profile:
        candidates.append(base / f".env.{profile}")
        candidates.extend(base / d / f"{profile}.env" for d in PROFILE_DIRECTORIES)
        candidates.append(GLOBAL_ENV_DIR / f"{profile}.env")
    return list(dict.fromkeys(candidates))


def load_env(
    env_file: str | None = None,
    base_dir: str | Path = ".",
    profile: str | None = None,
    include_process_env: bool = True,
) -> dict[str, str]:
    """Merge .env, an explicit env file and profile files, then os.environ on top."""
    env: dict[str, str] = {}
    for path in env_candidates(profile, env_file, base_dir):
        if path.is_file():
            env.update({k: v for k, v in dotenv_values(str(path)).items() if v is not None})
    if include_process_env:
        env.update(os.environ)
    return env


def validate_identifier(value: str, label: str) -> str:
    if not value or not _IDENTIFIER_RE.match(value):
        raise ValidationError(f'Invalid {label}: "{value}"')
    return value


def _resource_candidates(
    resource_name: str,
    cli_override: str | None,
    config: dict,
) -> list[Path]:
    """Build the ordered candidate list for a named resource directory."""
    if cli_override:
        p = Path(cli_override)
        if not p.is_absolute():
            p = Path.cwd() / p
        return [p]

    candidates: list[Path] = []
    configured = config_path_value(config, f"{resource_name}_dir")
    if configured:
        candidates.append(configured)
    candidates.append(Path(resource_name))
    candidates.append(GLOBAL_DIR / resource_name)
    return candidates


def resolve_resource_dir(
    resource_name: str,
    cli_override: str | None,
    config: dict,
    default: Path | None = None,
) -> Path | None:
    """Find a resource directory by name.

    Resolution order:
      1. cli_override (absolute or relative to CWD; hard, no fallthrough)
      2. {resource_name}_dir from config defaults (relative to config file)
      3. ./{resource_name}/ in CWD
      4. ~/.reqchain/{resource_name}/
    """
    candidates = _resource_candidates(resource_name, cli_override, config)
    return resolve_path(candidates, default=default)


def _read_yaml(path: Path) -> Any:
    try:
        with open(path) as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise FileError(f"Invalid YAML in {path}", code="EPARSE", details=str(e)) from e
    except OSError as e:
        raise FileError(f"Unable to read {path}: {e.strerror}", details={"path": str(path)}) from e


def _write_yaml(path: Path, data: Any) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(data, f, sort_keys=False, default_flow_style=False)
    except OSError as e:
        raise FileError(f"Unable to write {path}: {e.strerror}", details={"path": str(path)}) from e


class CollectionStore:
    """Collections are directories; each saved request is ``<name>.yaml`` inside one."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def collection_dir(self, collection: str) -> Path:
        return self.root / validate_identifier(collection, "collection name")

    def request_path(self, collection: str, name: str) -> Path:
        return self.collection_dir(collection) / f"{validate_identifier(name, 'request name')}.yaml"

    def create_collection(self, collection: str) -> bool:
        """Create the collection. Returns False if it already existed."""
        path = self.collection_dir(collection)
        if path.is_dir():
            return False
        try:
            path.mkdir(parents=True)
        except OSError as e:
            raise FileError(f"Unable to create collection {collection}: {e.strerror}") from e
        return True

    def list_collections(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())

    def list_requests(self, collection: str) -> list[str]:
        path = self.collection_dir(collection)
        if not path.is_dir():
            raise FileError(f'Collection "{collection}" does not exist', code="ENOENT")
        return sorted(p.stem for p in path.glob("*.yaml") if p.is_file())

    def read_request(self, collection: str, name: str) -> dict[str, Any]:
        path = self.request_path(collection, name)
        if not path.is_file():
            raise FileError(
                f'Request "{name}" not found in collection "{collection}"',
                code="ENOENT",
                details={"path": str(path)},
            )
        data = _read_yaml(path)
        if not isinstance(data, dict):
            raise FileError(f"Saved request must be a mapping: {path}", code="EPARSE")
        return data

    def save_request(self, collection: str, name: str, record: dict[str, Any]) -> Path:
        """Write (or overwrite) a request into an existing collection."""
        if not self.collection_dir(collection).is_dir():
            raise ValidationError(f'Collection "{collection}" does not exist')
        path = self.request_path(collection, name)
        _write_yaml(path, record)
        return path


def parse_assignment(text: str) -> tuple[str, str, str]:
    """'scope.key=value' -> (scope, key, value). A bare key goes to global."""
    if "=" not in text:
        raise ValidationError(f'Invalid variable assignment: "{text}". Use scope.key=value')
    target, value = text.split("=", 1)
    scope, key = parse_scoped_key(target.strip())
    if not scope or not key:
        raise ValidationError(f'Invalid variable assignment: "{text}". Use scope.key=value')
    return scope, key, value.strip()


class VariableStore:
    """Persistent variables: a YAML file of ``{scope: {key: value}}``."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        data = _read_yaml(self.path) or {}
        if not isinstance(data, dict):
            raise FileError(f"Variables file must contain a mapping: {self.path}", code="EPARSE")
        return {str(scope): dict(values or {}) for scope, values in data.items()}

    def set(self, scope: str, key: str, value: Any) -> None:
        data = self.load()
        data.setdefault(scope, {})[key] = value
        _write_yaml(self.path, data)

    def unset(self, scope: str, key: str) -> bool:
        data = self.load()
        values = data.get(scope)
        if values is None or key not in values:
            return False
        del values[key]
        if not values:
            del data[scope]
        _write_yaml(self.path, data)
        return True


def resolve_vars_path(config: dict) -> Path:
    return config_path_value(config, "vars_file") or GLOBAL_VARS_FILE


def resolve_collections_dir(config: dict, cli_override: str | None = None) -> Path:
    return resolve_resource_dir("collections", cli_override, config, default=GLOBAL_COLLECTIONS_DIR)


def build_runtime_scope(variables: dict[str, dict] | None, env: dict[str, str] | None) -> RuntimeScope:
    """Stored scopes plus env, and the empty per-invocation scopes."""
    scopes: dict[str, dict] = {DEFAULT_SCOPE: {}}
    scopes.update(variables or {})
    scopes["env"] = dict(env or {})
    for name in BUILTIN_SCOPES:
        scopes[name] = {}
    return RuntimeScope(scopes)


def default_header_lines(config: dict) -> tuple[str, ...]:
    headers = config.get("defaults", {}).get("headers") or {}
    return tuple(f"{k}: {v}" for k, v in headers.items())

