"""Engine configuration for beaconpresence."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Callable
from typing import Any

from beaconpresence._constants import DETECTION_EVENT_TYPE
from beaconpresence.exceptions import PresenceConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class PresenceConfig:
    """Engine configuration.

    Parameters
    ----------
    directory_url : str
        Base URL of the service hosting ``/api/agents`` and ``/api/beacons``.
    api_token : str or None
        Token sent as ``x-access-token`` on directory requests.
    request_timeout : float
        Total timeout in seconds for one directory request.
    agent_cache_ttl : float
        Seconds agent records are cached between cycles.  ``0`` disables
        caching; every cycle then hits the directory.
    heartbeat_enabled : bool
        Push ``lastSeen``/``lastSeenBy`` back to the agent directory after
        each cycle.
    log_detections : bool
        Log every raw agent report on the ``beaconpresence.detections`` logger.
    event_type : str
        Event type string handed to the publisher with every event.
    mqtt_enabled : bool
        Publish classified events to an MQTT broker.
    mqtt_host, mqtt_port : str, int
        Broker address.
    mqtt_topic : str
        Topic prefix; events go to ``<prefix>/<agentId>/<eventType>``.
    mqtt_username, mqtt_password : str or None
        Broker credentials.
    mqtt_tls : bool
        Use TLS towards the broker.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    """

    directory_url: str = "http://localhost:9000"
    api_token: str | None = None
    request_timeout: float = 10.0
    agent_cache_ttl: float = 30.0
    heartbeat_enabled: bool = True
    log_detections: bool = False
    event_type: str = DETECTION_EVENT_TYPE
    mqtt_enabled: bool = False
    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_topic: str = "beacons/presence"
    mqtt_username: str | None = None
    mqtt_password: str | None = None
    mqtt_tls: bool = False
    mqtt_keepalive: int = 60

    def __post_init__(self) -> None:
        if not self.directory_url.strip():
            raise PresenceConfigError("directory_url must be non-empty")
        if self.request_timeout <= 0:
            raise PresenceConfigError(f"request_timeout must be positive, got {self.request_timeout}")
        if self.agent_cache_ttl < 0:
            raise PresenceConfigError(f"agent_cache_ttl must be >= 0, got {self.agent_cache_ttl}")
        if not 0 < self.mqtt_port < 65536:
            raise PresenceConfigError(f"mqtt_port out of range: {self.mqtt_port}")
        if not self.mqtt_topic.strip("/"):
            raise PresenceConfigError("mqtt_topic must be non-empty")

    @classmethod
    def from_env(cls, **overrides: Any) -> PresenceConfig:
        """Create configuration from ``BEACON_PRESENCE_*`` environment variables.

        Explicit keyword arguments override environment values.

        Raises
        ------
        PresenceConfigError
            If a numeric variable cannot be parsed.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "BEACON_PRESENCE_DIRECTORY_URL": "directory_url",
            "BEACON_PRESENCE_API_TOKEN": "api_token",
            "BEACON_PRESENCE_EVENT_TYPE": "event_type",
            "BEACON_PRESENCE_MQTT_HOST": "mqtt_host",
            "BEACON_PRESENCE_MQTT_TOPIC": "mqtt_topic",
            "BEACON_PRESENCE_MQTT_USERNAME": "mqtt_username",
            "BEACON_PRESENCE_MQTT_PASSWORD": "mqtt_password",
        }
        _ENV_NUMBER_MAP: dict[str, tuple[str, Callable[[str], Any]]] = {
            "BEACON_PRESENCE_REQUEST_TIMEOUT": ("request_timeout", float),
            "BEACON_PRESENCE_AGENT_CACHE_TTL": ("agent_cache_ttl", float),
            "BEACON_PRESENCE_MQTT_PORT": ("mqtt_port", int),
            "BEACON_PRESENCE_MQTT_KEEPALIVE": ("mqtt_keepalive", int),
        }
        _ENV_BOOL_MAP = {
            "BEACON_PRESENCE_HEARTBEAT_ENABLED": ("heartbeat_enabled", True),
            "BEACON_PRESENCE_LOG_DETECTIONS": ("log_detections", False),
            "BEACON_PRESENCE_MQTT_ENABLED": ("mqtt_enabled", False),
            "BEACON_PRESENCE_MQTT_TLS": ("mqtt_tls", False),
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        for env_key, (field_name, convert) in _ENV_NUMBER_MAP.items():
            val = env.get(env_key)
            if val is None or field_name in overrides:
                continue
            try:
                config_kwargs[field_name] = convert(val)
            except ValueError as exc:
                raise PresenceConfigError(f"{env_key} is not a valid number: {val!r}") from exc

        for env_key, (field_name, default) in _ENV_BOOL_MAP.items():
            if field_name not in overrides:
                config_kwargs[field_name] = _env_bool(env.get(env_key), default)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
