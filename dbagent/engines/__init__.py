"""
Engine adapters: mongo, postgres, cassandra, oracle.
"""

import os
from typing import Mapping, Optional

from dbagent.config import Config, ConfigError
from .base import Engine
from . import mongo, postgres, cassandra, oracle


ENGINES = {
    'mongo': mongo.load,
    'postgres': postgres.load,
    'cassandra': cassandra.load,
    'oracle': oracle.load,
}

ENGINE_NAMES = tuple(ENGINES)


def load_engine(name: str, config: Config, environ: Optional[Mapping[str, str]] = None) -> Engine:
    """
    Build an engine adapter from the environment.

    Args:
        name: One of ENGINE_NAMES
        config: Pipeline configuration
        environ: Mapping to read engine settings from (defaults to os.environ)

    Raises:
        ConfigError: If the engine is unknown or its settings are invalid
    """
    try:
        loader = ENGINES[name.lower()]
    except KeyError:
        raise ConfigError(f"Unknown engine: {name}. Valid options: {', '.join(ENGINE_NAMES)}")

    if environ is None:
        environ = os.environ

    return loader(config, environ)


__all__ = ['Engine', 'ENGINES', 'ENGINE_NAMES', 'load_engine']
