"""evpn-fabric command-line runtime."""

from .config import AgentConfig, fabric_config_from_env, load_config  # noqa: F401

__all__ = [
    "AgentConfig",
    "fabric_config_from_env",
    "load_config",
]
