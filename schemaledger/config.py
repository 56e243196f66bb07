#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Configuration loading and logging setup.

Config files are YAML (.yaml/.yml) or JSON (anything else):

    migrations: db/migrations
    ledger_table: schema_migrations
    lock:
      timeout: 30
      ttl: 300
    environments:
      development:
        url: sqlite+aiosqlite:///dev.db
      production:
        driver: postgresql+asyncpg
        host: db.internal
        database: app
        username: deploy
        credential_ref: APP_DB_PASSWORD
        schema: app

Environment variables:
    MIGRATE_CONFIG        config file path when none is given
    MIGRATE_<ENV>_URL     replaces an environment's URL
    MIGRATE_ACTOR         recorded as applied_by
"""
import getpass
import json
import logging
import os
import re
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from sqlalchemy.engine import URL, make_url

from schemaledger.errors import ConfigError

DEFAULT_CONFIG_FILES = ('migrate.yaml', 'migrate.yml', 'migrate.json')

LOG_FORMAT = '[%(asctime).19s] [%(name)s] [%(levelname)s] %(message)s'


class RobustFileHandler(logging.FileHandler):
    """FileHandler that tolerates flush errors on Windows file handles"""

    def flush(self):
        try:
            super().flush()
        except OSError as e:
            # EINVAL from a handle in an inconsistent state
            if e.errno != 22:
                raise


def configure_logger(logger,
                     log_file=None,
                     log_format=None,
                     log_level=logging.INFO):
    """Configure a logger with a file or stream handler

    Args:
        logger: Logger instance or logger name string
        log_file: File path string or file-like object (None for stderr)
        log_format: Format string for log messages
        log_level: Logging level (e.g., logging.INFO, logging.DEBUG)

    Returns:
        Configured logger instance
    """
    if isinstance(log_file, str):
        handler = RobustFileHandler(
            log_file,
            mode='a',
            encoding='utf-8',
            errors='replace'
        )
    else:
        handler = logging.StreamHandler(log_file)  # Default to stderr if None

    handler.setFormatter(logging.Formatter(log_format or LOG_FORMAT))

    if isinstance(logger, str):
        logger = logging.getLogger(logger)

    logger.addHandler(handler)
    logger.setLevel(log_level)

    return logger


def parse_log_level(value) -> int:
    """Convert 'debug' / 'INFO' / 10 to a logging level."""
    if isinstance(value, int):
        return value
    level = getattr(logging, str(value).upper(), None)
    if not isinstance(level, int):
        raise ConfigError(f"Unknown log level: {value!r}")
    return level


def default_actor(environ: Optional[Mapping[str, str]] = None) -> str:
    """MIGRATE_ACTOR, or user@host."""
    environ = os.environ if environ is None else environ
    actor = environ.get('MIGRATE_ACTOR')
    if actor:
        return actor
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = 'unknown'
    return f"{user}@{socket.gethostname()}"


@dataclass
class ConnectionProfile:
    """
    Connection settings for one environment.

    Either url or the components (driver, host, port, database,
    username) are given. The password is never stored in the file:
    credential_ref names the environment variable that holds it.
    """
    url: Optional[str] = None
    driver: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    username: Optional[str] = None
    credential_ref: Optional[str] = None
    schema: Optional[str] = None
    transactional_ddl: Optional[bool] = None

    def resolve_url(self, environ: Optional[Mapping[str, str]] = None) -> str:
        """
        Build the database URL.

        Raises:
            ConfigError: If neither url nor driver/database is set, or the
                credential variable is missing
        """
        environ = os.environ if environ is None else environ

        password = None
        if self.credential_ref:
            password = environ.get(self.credential_ref)
            if password is None:
                raise ConfigError(
                    f"Credential variable {self.credential_ref} is not set"
                )

        if self.url:
            if password is None:
                return self.url
            return make_url(self.url).set(password=password).render_as_string(
                hide_password=False
            )

        if not self.driver or not self.database:
            raise ConfigError(
                "Environment profile needs either 'url' or 'driver' and 'database'"
            )

        return URL.create(
            drivername=self.driver,
            username=self.username,
            password=password,
            host=self.host,
            port=self.port,
            database=self.database,
        ).render_as_string(hide_password=False)


@dataclass
class MigrateConfig:
    """Parsed migrate configuration."""
    migrations: str = 'migrations'
    ledger_table: str = 'schema_migrations'
    lock_timeout: float = 30.0
    lock_ttl: float = 300.0
    lock_poll_interval: float = 0.5
    batch_size: int = 1000
    max_batches: int = 100000
    actor: Optional[str] = None
    log_level: str = 'INFO'
    log_file: Optional[str] = None
    environments: Dict[str, ConnectionProfile] = field(default_factory=dict)
    source_path: Optional[Path] = None

    def environment(self, name: str) -> ConnectionProfile:
        """
        Look up an environment profile.

        Raises:
            ConfigError: If the environment is not configured
        """
        try:
            return self.environments[name]
        except KeyError:
            known = ', '.join(sorted(self.environments)) or 'none'
            raise ConfigError(
                f"Unknown environment '{name}' (configured: {known})"
            ) from None


_PROFILE_KEYS = set(ConnectionProfile.__dataclass_fields__)


def _env_key(name: str) -> str:
    return re.sub(r'[^A-Za-z0-9]', '_', name).upper()


def find_config_file(path=None,
                     environ: Optional[Mapping[str, str]] = None) -> Optional[Path]:
    """Explicit path, then $MIGRATE_CONFIG, then migrate.{yaml,yml,json}."""
    environ = os.environ if environ is None else environ
    if path:
        return Path(path)
    if environ.get('MIGRATE_CONFIG'):
        return Path(environ['MIGRATE_CONFIG'])
    for candidate in DEFAULT_CONFIG_FILES:
        if Path(candidate).is_file():
            return Path(candidate)
    return None


def _read_file(path: Path) -> Dict[str, Any]:
    try:
        with open(path, 'r', encoding='utf-8') as fp:
            if path.suffix in ('.yaml', '.yml'):
                conf = yaml.safe_load(fp)
            else:
                conf = json.load(fp)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}") from None
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigError(f"Config file {path} is not valid: {e}") from e

    if conf is None:
        return {}
    if not isinstance(conf, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return conf


def _section(conf: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = conf.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Config key '{name}' must be a mapping")
    return value


def _number(value, key: str, kind=float):
    try:
        number = kind(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Config key '{key}' must be a number, got {value!r}") from None
    if number < 0:
        raise ConfigError(f"Config key '{key}' must not be negative")
    return number


def load_config(path=None,
                environ: Optional[Mapping[str, str]] = None) -> MigrateConfig:
    """
    Load configuration from YAML or JSON.

    A missing default file is not an error (environments can then come
    only from MIGRATE_<ENV>_URL variables); an explicit path that does not
    exist is.

    Args:
        path: Config file path (optional)
        environ: Environment variables (defaults to os.environ)

    Returns:
        MigrateConfig

    Raises:
        ConfigError: If the file is unreadable or a value is invalid
    """
    environ = os.environ if environ is None else environ
    config_path = find_config_file(path, environ)
    conf = _read_file(config_path) if config_path else {}

    lock = _section(conf, 'lock')
    shadow = _section(conf, 'shadow')

    config = MigrateConfig(
        migrations=str(conf.get('migrations', 'migrations')),
        ledger_table=str(conf.get('ledger_table', 'schema_migrations')),
        lock_timeout=_number(lock.get('timeout', 30), 'lock.timeout'),
        lock_ttl=_number(lock.get('ttl', 300), 'lock.ttl'),
        lock_poll_interval=_number(lock.get('poll_interval', 0.5),
                                   'lock.poll_interval'),
        batch_size=_number(shadow.get('batch_size', 1000),
                           'shadow.batch_size', int),
        max_batches=_number(shadow.get('max_batches', 100000),
                            'shadow.max_batches', int),
        actor=conf.get('actor'),
        log_level=str(conf.get('log_level', 'INFO')),
        log_file=conf.get('log_file'),
        source_path=config_path,
    )
    if config.lock_ttl <= 0:
        raise ConfigError("Config key 'lock.ttl' must be positive")
    if config.batch_size <= 0:
        raise ConfigError("Config key 'shadow.batch_size' must be positive")

    # Relative migrations directory is resolved against the config file
    if config_path and not Path(config.migrations).is_absolute():
        config.migrations = str(config_path.parent / config.migrations)

    for name, raw in _section(conf, 'environments').items():
        if not isinstance(raw, dict):
            raise ConfigError(f"Environment '{name}' must be a mapping")
        unknown = set(raw) - _PROFILE_KEYS
        if unknown:
            raise ConfigError(
                f"Environment '{name}' has unknown keys: {', '.join(sorted(unknown))}"
            )
        config.environments[name] = ConnectionProfile(**raw)

    # MIGRATE_<ENV>_URL overrides (or defines) an environment's URL
    for name, profile in config.environments.items():
        override = environ.get(f"MIGRATE_{_env_key(name)}_URL")
        if override:
            profile.url = override
    for key, value in environ.items():
        match = re.match(r'^MIGRATE_(.+)_URL$', key)
        if match and value:
            name = match.group(1).lower()
            if not any(_env_key(n) == match.group(1) for n in config.environments):
                config.environments[name] = ConnectionProfile(url=value)

    if environ.get('MIGRATE_ACTOR'):
        config.actor = environ['MIGRATE_ACTOR']

    return config
