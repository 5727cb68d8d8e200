"""
Configuration

Loads entity kinds, named origins and run defaults from a YAML file, applies
environment overrides and resolves origin secrets (directly, from the
environment, or from Vault), then builds the configured sources and sinks.

Example:

    entities:
      session_type:
        identity_field: slug
        ignore_fields: [id, createdAt, updatedAt]
        fields:
          title: {type: string, required: true}
          price: {type: decimal, tolerance: 0.01}
          durationMinutes: {type: integer}

    origins:
      fixtures:
        type: file
        path: fixtures/session_types.yaml
      prod-db:
        type: store
        secret_path: statesync/prod-db
        tables:
          session_type: {table: public.SessionType, identity_column: slug}
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import psycopg2
import requests
import yaml

from statesync.reconciliation.executor import RetryPolicy
from statesync.reconciliation.models import EntityKind, FieldSpec
from statesync.reconciliation.schema import RecordValidator, SchemaValidationError
from statesync.sources.file import FileSource
from statesync.sources.provider import DEFAULT_BASE_URL, ProviderResource, ProviderSink, ProviderSource
from statesync.sources.store import StoreSink, StoreSource, StoreTable

logger = logging.getLogger(__name__)

ORIGIN_TYPES = ("store", "provider", "file")

ENV_PREFIX = "STATESYNC_"


class ConfigError(ValueError):
    """Raised for invalid configuration."""


@dataclass
class OriginConfig:
    """
    One named origin.

    Attributes:
        name: Origin name used in run requests
        type: "store", "provider" or "file"
        options: Type-specific options from the YAML file
        read_only: Build a source instead of a sink
    """

    name: str
    type: str
    options: Dict[str, Any] = field(default_factory=dict)
    read_only: bool = False


@dataclass
class AppConfig:
    """Complete application configuration."""

    entities: Dict[str, EntityKind]
    origins: Dict[str, OriginConfig]
    kind_order: List[str] = field(default_factory=list)
    journal_dir: str = ".reconciliation"
    call_timeout_seconds: float = 30.0
    blast_radius_threshold: float = 0.5
    verification_batch_size: int = 100
    parallel_creates: int = 1
    confirmation_timeout_seconds: float = 300.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)


def load_config(path: str, env: Optional[Dict[str, str]] = None) -> AppConfig:
    """
    Load and validate a configuration file.

    Args:
        path: YAML file path
        env: Environment mapping (default os.environ)

    Returns:
        AppConfig with environment overrides applied

    Raises:
        ConfigError: If the file is missing or invalid
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    config = parse_config(data)
    apply_env_overrides(config, os.environ if env is None else env)

    logger.info(f"Loaded config from {path}: {len(config.entities)} kinds, {len(config.origins)} origins")
    return config


def parse_config(data: Dict[str, Any]) -> AppConfig:
    """
    Build an AppConfig from parsed YAML.

    Args:
        data: Parsed configuration mapping

    Returns:
        AppConfig

    Raises:
        ConfigError: If entities or origins are missing or malformed
    """
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping")

    entities = {
        kind: parse_entity(kind, spec or {})
        for kind, spec in (data.get("entities") or {}).items()
    }
    if not entities:
        raise ConfigError("At least one entity kind must be configured")

    origins = {
        name: parse_origin(name, spec or {})
        for name, spec in (data.get("origins") or {}).items()
    }
    if not origins:
        raise ConfigError("At least one origin must be configured")

    kind_order = list(data.get("kind_order") or entities)
    unknown = [kind for kind in kind_order if kind not in entities]
    if unknown:
        raise ConfigError(f"kind_order names unknown kinds: {unknown}")
    kind_order.extend(kind for kind in entities if kind not in kind_order)

    retry = data.get("retry") or {}

    try:
        return AppConfig(
            entities=entities,
            origins=origins,
            kind_order=kind_order,
            journal_dir=data.get("journal_dir", ".reconciliation"),
            call_timeout_seconds=float(data.get("call_timeout_seconds", 30.0)),
            blast_radius_threshold=float(data.get("blast_radius_threshold", 0.5)),
            verification_batch_size=int(data.get("verification_batch_size", 100)),
            parallel_creates=int(data.get("parallel_creates", 1)),
            confirmation_timeout_seconds=float(data.get("confirmation_timeout_seconds", 300.0)),
            retry=RetryPolicy(
                max_attempts=int(retry.get("max_attempts", 3)),
                initial_backoff_seconds=float(retry.get("initial_backoff_seconds", 0.5)),
                backoff_multiplier=float(retry.get("backoff_multiplier", 2.0)),
            ),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid run settings: {e}") from e


def parse_entity(kind: str, spec: Dict[str, Any]) -> EntityKind:
    """Build an EntityKind from its YAML mapping."""
    if not spec.get("identity_field"):
        raise ConfigError(f"Entity '{kind}' needs an identity_field")

    validator = RecordValidator()
    fields = {}

    for name, field_spec in (spec.get("fields") or {}).items():
        if isinstance(field_spec, str):
            field_spec = {"type": field_spec}
        field_spec = field_spec or {}
        fields[name] = FieldSpec(
            type=field_spec.get("type", "any"),
            required=bool(field_spec.get("required", False)),
            tolerance=field_spec.get("tolerance"),
        )
        try:
            validator.validate_field_spec(name, fields[name])
        except SchemaValidationError as e:
            raise ConfigError(f"Entity '{kind}': {e}") from e

    return EntityKind(
        kind=kind,
        identity_field=spec["identity_field"],
        fields=fields,
        ignore_fields=tuple(spec.get("ignore_fields") or ()),
        depends_on=tuple(spec.get("depends_on") or ()),
    )


def parse_origin(name: str, spec: Dict[str, Any]) -> OriginConfig:
    """Build an OriginConfig from its YAML mapping."""
    origin_type = spec.get("type")
    if origin_type not in ORIGIN_TYPES:
        raise ConfigError(f"Origin '{name}' has invalid type {origin_type!r}; expected one of {ORIGIN_TYPES}")

    if origin_type == "file" and not spec.get("path"):
        raise ConfigError(f"File origin '{name}' needs a path")
    if origin_type == "store" and not spec.get("tables"):
        raise ConfigError(f"Store origin '{name}' needs tables")
    if origin_type == "provider" and not spec.get("resources"):
        raise ConfigError(f"Provider origin '{name}' needs resources")

    options = {key: value for key, value in spec.items() if key not in ("type", "read_only")}
    return OriginConfig(
        name=name,
        type=origin_type,
        options=options,
        read_only=bool(spec.get("read_only", origin_type == "file")),
    )


def apply_env_overrides(config: AppConfig, env: Dict[str, str]) -> None:
    """
    Apply environment overrides in place.

    STATESYNC_JOURNAL_DIR, STATESYNC_CALL_TIMEOUT, STATESYNC_BLAST_RADIUS_THRESHOLD
    and STATESYNC_PARALLEL_CREATES override run settings. DATABASE_URL and
    CALENDLY_API_TOKEN fill in store DSNs and provider tokens that the file
    leaves unset.
    """
    overrides = {
        "JOURNAL_DIR": ("journal_dir", str),
        "CALL_TIMEOUT": ("call_timeout_seconds", float),
        "BLAST_RADIUS_THRESHOLD": ("blast_radius_threshold", float),
        "PARALLEL_CREATES": ("parallel_creates", int),
    }

    for suffix, (attribute, cast) in overrides.items():
        value = env.get(ENV_PREFIX + suffix)
        if value is None:
            continue
        try:
            setattr(config, attribute, cast(value))
        except ValueError as e:
            raise ConfigError(f"Invalid {ENV_PREFIX}{suffix}={value!r}: {e}") from e
        logger.debug(f"Override {attribute} from environment")

    for origin in config.origins.values():
        if origin.type == "store" and not origin.options.get("dsn") and env.get("DATABASE_URL"):
            origin.options["dsn"] = env["DATABASE_URL"]
        if origin.type == "provider" and not origin.options.get("token"):
            token_env = origin.options.get("token_env", "CALENDLY_API_TOKEN")
            if env.get(token_env):
                origin.options["token"] = env[token_env]


def resolve_secrets(config: AppConfig, vault=None) -> None:
    """
    Fill in DSNs and tokens from Vault for origins naming a secret_path.

    Args:
        config: Configuration to update in place
        vault: VaultClient, or None to skip
    """
    for origin in config.origins.values():
        secret_path = origin.options.get("secret_path")
        if not secret_path:
            continue

        if vault is None:
            if not (origin.options.get("dsn") or origin.options.get("token")):
                logger.warning(f"Origin '{origin.name}' names secret {secret_path} but Vault is not configured")
            continue

        if origin.type == "store" and not origin.options.get("dsn"):
            origin.options["dsn"] = vault.get_database_dsn(secret_path)
        elif origin.type == "provider" and not origin.options.get("token"):
            origin.options["token"] = vault.get_api_token(secret_path)


def build_sources(
    config: AppConfig,
    connect: Callable[..., Any] = psycopg2.connect,
    session_factory: Callable[[], requests.Session] = requests.Session
) -> Tuple[Dict[str, Any], List[Any]]:
    """
    Build every configured origin.

    The returned connections and sessions belong to the caller, who must close
    them after the run.

    Args:
        config: Application configuration
        connect: psycopg2 connect function
        session_factory: requests session factory

    Returns:
        (origin name -> source or sink, list of closable resources)
    """
    sources: Dict[str, Any] = {}
    resources: List[Any] = []

    try:
        for origin in config.origins.values():
            if origin.type == "file":
                sources[origin.name] = FileSource(origin.name, origin.options["path"])

            elif origin.type == "store":
                dsn = origin.options.get("dsn")
                if not dsn:
                    raise ConfigError(f"Store origin '{origin.name}' has no DSN (set dsn, DATABASE_URL or secret_path)")
                connection = connect(dsn)
                resources.append(connection)
                cls = StoreSource if origin.read_only else StoreSink
                sources[origin.name] = cls(
                    origin.name,
                    connection,
                    build_store_tables(origin),
                    timeout_seconds=config.call_timeout_seconds,
                )

            elif origin.type == "provider":
                token = origin.options.get("token")
                if not token:
                    raise ConfigError(
                        f"Provider origin '{origin.name}' has no token (set token, CALENDLY_API_TOKEN or secret_path)"
                    )
                session = session_factory()
                resources.append(session)
                cls = ProviderSource if origin.read_only else ProviderSink
                sources[origin.name] = cls(
                    origin.name,
                    session,
                    token,
                    build_provider_resources(origin),
                    base_url=origin.options.get("base_url", DEFAULT_BASE_URL),
                    timeout_seconds=config.call_timeout_seconds,
                )
    except Exception:
        close_resources(resources)
        raise

    return sources, resources


def build_store_tables(origin: OriginConfig) -> Dict[str, StoreTable]:
    tables = {}
    for kind, spec in origin.options["tables"].items():
        if not spec.get("table") or not spec.get("identity_column"):
            raise ConfigError(f"Store origin '{origin.name}': table for '{kind}' needs table and identity_column")
        tables[kind] = StoreTable(
            table=spec["table"],
            identity_column=spec["identity_column"],
            columns=tuple(spec.get("columns") or ()),
            read_only=bool(spec.get("read_only", False)),
        )
    return tables


def build_provider_resources(origin: OriginConfig) -> Dict[str, ProviderResource]:
    resources = {}
    for kind, spec in origin.options["resources"].items():
        if not spec.get("path") or not spec.get("identity_field"):
            raise ConfigError(f"Provider origin '{origin.name}': resource '{kind}' needs path and identity_field")
        resources[kind] = ProviderResource(
            path=spec["path"],
            identity_field=spec["identity_field"],
            params=dict(spec.get("params") or {}),
            rename=dict(spec.get("rename") or {}),
            derive=dict(spec.get("derive") or {}),
            fields=tuple(spec.get("fields") or ()),
            payload_map=dict(spec.get("payload_map") or {}),
            resource_uri_field=spec.get("resource_uri_field", "uri"),
            writable=bool(spec.get("writable", False)),
            updatable=bool(spec.get("updatable", False)),
        )
    return resources


def close_resources(resources: List[Any]) -> None:
    """Close connections and sessions returned by build_sources."""
    for resource in reversed(resources):
        try:
            resource.close()
        except Exception as e:
            logger.warning(f"Failed to close {type(resource).__name__}: {e}")
