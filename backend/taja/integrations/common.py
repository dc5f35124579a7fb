from __future__ import annotations


class IntegrationDisabledError(RuntimeError):
    pass


class IntegrationMisconfiguredError(RuntimeError):
    pass


def config_value(config, key: str, default=None):
    """Read a setting from a Flask config mapping or a plain object."""
    if hasattr(config, "get"):
        return config.get(key, default)
    return getattr(config, key, default)
