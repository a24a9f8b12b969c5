"""Normalise the platform's varying response shapes into stable values.

Addon, credential and template-run payloads have changed shape over time.
Each lookup here is a short, ordered list of named strategies; the first one
that yields a usable value wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional, Tuple
from urllib.parse import quote, unquote, urlparse

DEFAULT_POSTGRES_PORT = 5432

_CREDENTIAL_URI_KEYS = ("EXTERNAL_POSTGRES_URI", "POSTGRES_URI")


@dataclass(frozen=True)
class ConnectionInfo:
    host: str
    port: int
    database: str
    user: str
    password: str
    connection_string: str

    @classmethod
    def from_parts(
        cls,
        *,
        host: str,
        port: Any,
        database: str,
        user: str,
        password: str,
        connection_string: Optional[str] = None,
    ) -> "ConnectionInfo":
        port_value = _coerce_port(port)
        if not connection_string:
            connection_string = (
                f"postgresql://{quote(user, safe='')}:{quote(password, safe='')}"
                f"@{host}:{port_value}/{database}"
            )
        return cls(
            host=host,
            port=port_value,
            database=database,
            user=user,
            password=password,
            connection_string=connection_string,
        )

    def redacted(self) -> dict:
        return {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "user": self.user,
        }


def _coerce_port(value: Any) -> int:
    if value in (None, ""):
        return DEFAULT_POSTGRES_PORT
    try:
        return int(value)
    except (TypeError, ValueError):
        return DEFAULT_POSTGRES_PORT


def _first(strategies: Iterable[Tuple[str, Callable[[Any], Any]]], payload: Any) -> Any:
    for _name, strategy in strategies:
        try:
            value = strategy(payload)
        except (AttributeError, KeyError, TypeError, IndexError):
            value = None
        if value:
            return value
    return None


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


# -- addon lists ------------------------------------------------------------

def _addons_data_list(payload: Any) -> Optional[list]:
    data = _as_dict(payload).get("data")
    return data if isinstance(data, list) else None


def _addons_data_items(payload: Any) -> Optional[list]:
    items = _as_dict(_as_dict(payload).get("data")).get("items")
    return items if isinstance(items, list) else None


def _addons_data_addons(payload: Any) -> Optional[list]:
    addons = _as_dict(_as_dict(payload).get("data")).get("addons")
    return addons if isinstance(addons, list) else None


def _addons_top_level(payload: Any) -> Optional[list]:
    return payload if isinstance(payload, list) else None


ADDON_LIST_STRATEGIES = (
    ("data_list", _addons_data_list),
    ("data_items", _addons_data_items),
    ("data_addons", _addons_data_addons),
    ("top_level_list", _addons_top_level),
)


def extract_addons(payload: Any) -> List[dict]:
    addons = _first(ADDON_LIST_STRATEGIES, payload) or []
    return [addon for addon in addons if isinstance(addon, dict)]


def addon_type(addon: dict) -> Optional[str]:
    return _as_dict(addon.get("spec")).get("type") or addon.get("type")


def find_postgres_addon(payload: Any) -> Optional[dict]:
    for addon in extract_addons(payload):
        if addon_type(addon) == "postgresql":
            return addon
    return None


# -- connection details -----------------------------------------------------

def _connection_object(payload: Any) -> Optional[ConnectionInfo]:
    body = _as_dict(payload)
    connection = _as_dict(_as_dict(body.get("data")).get("connection")) or _as_dict(
        body.get("connection")
    )
    required = ("host", "database", "user", "password")
    if not all(connection.get(name) for name in required):
        return None
    return ConnectionInfo.from_parts(
        host=connection["host"],
        port=connection.get("port"),
        database=connection["database"],
        user=connection["user"],
        password=connection["password"],
        connection_string=connection.get("connectionString"),
    )


def _credential_envs(payload: Any) -> Optional[ConnectionInfo]:
    body = _as_dict(payload)
    envs = _as_dict(_as_dict(body.get("data")).get("envs")) or _as_dict(body.get("envs"))
    if not envs:
        return None
    uri = next((envs[key] for key in _CREDENTIAL_URI_KEYS if envs.get(key)), None)
    if all(envs.get(name) for name in ("HOST", "DATABASE", "USERNAME", "PASSWORD")):
        return ConnectionInfo.from_parts(
            host=envs["HOST"],
            port=envs.get("PORT"),
            database=envs["DATABASE"],
            user=envs["USERNAME"],
            password=envs["PASSWORD"],
            connection_string=uri,
        )
    if uri:
        return parse_connection_uri(uri)
    return None


def _bare_uri(payload: Any) -> Optional[ConnectionInfo]:
    if isinstance(payload, str):
        return parse_connection_uri(payload)
    return None


CONNECTION_STRATEGIES = (
    ("connection_object", _connection_object),
    ("credential_envs", _credential_envs),
    ("bare_uri", _bare_uri),
)


def parse_connection_uri(uri: str) -> Optional[ConnectionInfo]:
    parsed = urlparse(uri)
    if parsed.scheme not in ("postgres", "postgresql") or not parsed.hostname:
        return None
    database = parsed.path.lstrip("/")
    if not (database and parsed.username and parsed.password):
        return None
    return ConnectionInfo.from_parts(
        host=parsed.hostname,
        port=parsed.port,
        database=database,
        user=unquote(parsed.username),
        password=unquote(parsed.password),
        connection_string=uri,
    )


def extract_connection_info(payload: Any) -> Optional[ConnectionInfo]:
    return _first(CONNECTION_STRATEGIES, payload)


# -- template runs ----------------------------------------------------------

def _project_from_steps(payload: Any) -> Optional[str]:
    run = _as_dict(payload).get("data", payload)
    for step in _as_dict(_as_dict(run).get("spec")).get("steps") or []:
        if _as_dict(step).get("kind") == "Project":
            return _as_dict(_as_dict(step.get("response")).get("data")).get("id")
    return None


def _project_from_output(payload: Any) -> Optional[str]:
    run = _as_dict(_as_dict(payload).get("data", payload))
    return _as_dict(run.get("output")).get("project_id")


def _project_from_results(payload: Any) -> Optional[str]:
    run = _as_dict(_as_dict(payload).get("data", payload))
    for result in run.get("results") or []:
        if _as_dict(result).get("kind") == "Project":
            return _as_dict(result.get("data")).get("id")
    return None


PROJECT_ID_STRATEGIES = (
    ("spec_steps", _project_from_steps),
    ("output", _project_from_output),
    ("results", _project_from_results),
)


def extract_project_id(payload: Any) -> Optional[str]:
    return _first(PROJECT_ID_STRATEGIES, payload)


# -- workspace API keys -----------------------------------------------------

API_KEY_STRATEGIES = (
    ("data_api_key", lambda body: _as_dict(_as_dict(body).get("data")).get("apiKey")),
    ("data_key", lambda body: _as_dict(_as_dict(body).get("data")).get("key")),
    ("api_key", lambda body: _as_dict(body).get("apiKey")),
)


def extract_api_key(payload: Any) -> Optional[str]:
    return _first(API_KEY_STRATEGIES, payload)


# -- secret groups and generic lists ---------------------------------------

SECRET_VALUE_STRATEGIES = (
    ("data_data", lambda body: _as_dict(_as_dict(_as_dict(body).get("data")).get("data"))),
    (
        "secret_variables",
        lambda body: _as_dict(
            _as_dict(_as_dict(_as_dict(body).get("data")).get("secrets")).get("variables")
        ),
    ),
    ("data_variables", lambda body: _as_dict(_as_dict(_as_dict(body).get("data")).get("variables"))),
)


def extract_secret_values(payload: Any) -> dict:
    return _first(SECRET_VALUE_STRATEGIES, payload) or {}


def extract_items(payload: Any, key: str) -> List[dict]:
    """Items of a list endpoint: ``data`` as a list, else ``data.<key>``."""
    data = _as_dict(payload).get("data") if isinstance(payload, dict) else payload
    if isinstance(data, dict):
        data = data.get(key)
    return [item for item in data or [] if isinstance(item, dict)]


__all__ = [
    "ConnectionInfo",
    "DEFAULT_POSTGRES_PORT",
    "addon_type",
    "extract_addons",
    "extract_api_key",
    "extract_connection_info",
    "extract_items",
    "extract_project_id",
    "extract_secret_values",
    "find_postgres_addon",
    "parse_connection_uri",
]
