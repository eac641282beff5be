"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Provide a typed, immutable config object

Non-responsibilities:
- No relay logic
- No protocol constants
- No runtime mutation
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum

from constants import (
    DEFAULT_HANDSHAKE_TIMEOUT_S,
    DEFAULT_PORT,
    DEFAULT_RECONNECT_DELAY_S,
    DEFAULT_RECONNECT_MAX_DELAY_S,
    DEFAULT_STREAM_START_TIMEOUT_S,
    DEFAULT_UPSTREAM_URL,
)


class MultiplexPolicy(str, Enum):
    """
    How downstream clients map onto upstream connections.

    PER_CLIENT:
        Every downstream client gets its own upstream connection, logged in
        with the credentials the client supplies.

    SHARED:
        One upstream connection (configured credentials) serves every
        connected client. Reference counted by subscribed clients.
    """
    PER_CLIENT = "per_client"
    SHARED = "shared"


class ReconnectStrategy(str, Enum):
    """Reconnect delay strategy after an unexpected upstream close."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class IncomingAudioFormat(str, Enum):
    """Format of inbound audio delivered to downstream clients."""
    OPUS = "opus"  # raw codec payload passthrough (default)
    PCM = "pcm"    # decoded PCM16 48kHz mono


@dataclass(frozen=True)
class UpstreamCredentials:
    """
    Login material for the voice-channel service.

    `channel` may hold a single channel name; `channels` is used instead
    when the deployment logs into several channels at once.
    """
    auth_token: str
    channel: str | None = None
    channels: tuple[str, ...] = ()
    username: str | None = None
    password: str | None = None

    def describe(self) -> dict[str, object]:
        """Log-safe summary (never includes secrets)."""
        return {
            "has_token": bool(self.auth_token),
            "token_length": len(self.auth_token),
            "channel": self.channel,
            "channels": list(self.channels),
            "has_username": self.username is not None,
            "has_password": self.password is not None,
        }


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup.
    Passed downward to the gateway and server bootstrap code.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str
    log_level: str
    enable_json_logs: bool

    # ------------------------------------------------------------------
    # Listening socket
    # ------------------------------------------------------------------

    host: str
    port: int

    # ------------------------------------------------------------------
    # Upstream service
    # ------------------------------------------------------------------

    upstream_url: str
    upstream_auth_token: str | None
    upstream_username: str | None
    upstream_password: str | None
    upstream_channel: str | None

    # ------------------------------------------------------------------
    # Relay policy
    # ------------------------------------------------------------------

    multiplex_policy: MultiplexPolicy
    incoming_audio_format: IncomingAudioFormat

    # ------------------------------------------------------------------
    # Reconnect / timeouts (0 disables a timeout)
    # ------------------------------------------------------------------

    reconnect_strategy: ReconnectStrategy
    reconnect_delay_s: float
    reconnect_max_delay_s: float
    handshake_timeout_s: float
    stream_start_timeout_s: float

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    def configured_credentials(self) -> UpstreamCredentials | None:
        """Credentials from the environment, or None when no token is set."""
        if not self.upstream_auth_token:
            return None
        return UpstreamCredentials(
            auth_token=self.upstream_auth_token,
            channel=self.upstream_channel,
            username=self.upstream_username,
            password=self.upstream_password,
        )

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        Raises:
            ValueError if an enum-valued or numeric variable is invalid.
        """
        return AppConfig(
            env=os.environ.get("ENV", "dev"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            enable_json_logs=os.environ.get("ENABLE_JSON_LOGS", "1") == "1",

            host=os.environ.get("HOST", "0.0.0.0"),
            port=int(os.environ.get("PORT", str(DEFAULT_PORT))),

            upstream_url=os.environ.get("UPSTREAM_URL", DEFAULT_UPSTREAM_URL),
            upstream_auth_token=os.environ.get("UPSTREAM_AUTH_TOKEN"),
            upstream_username=os.environ.get("UPSTREAM_USERNAME"),
            upstream_password=os.environ.get("UPSTREAM_PASSWORD"),
            upstream_channel=os.environ.get("UPSTREAM_CHANNEL"),

            multiplex_policy=MultiplexPolicy(
                os.environ.get("MULTIPLEX_POLICY", MultiplexPolicy.PER_CLIENT.value)
            ),
            incoming_audio_format=IncomingAudioFormat(
                os.environ.get("INCOMING_AUDIO_FORMAT", IncomingAudioFormat.OPUS.value)
            ),

            reconnect_strategy=ReconnectStrategy(
                os.environ.get("RECONNECT_STRATEGY", ReconnectStrategy.FIXED.value)
            ),
            reconnect_delay_s=float(
                os.environ.get("RECONNECT_DELAY_S", str(DEFAULT_RECONNECT_DELAY_S))
            ),
            reconnect_max_delay_s=float(
                os.environ.get("RECONNECT_MAX_DELAY_S", str(DEFAULT_RECONNECT_MAX_DELAY_S))
            ),
            handshake_timeout_s=float(
                os.environ.get("HANDSHAKE_TIMEOUT_S", str(DEFAULT_HANDSHAKE_TIMEOUT_S))
            ),
            stream_start_timeout_s=float(
                os.environ.get("STREAM_START_TIMEOUT_S", str(DEFAULT_STREAM_START_TIMEOUT_S))
            ),
        )
