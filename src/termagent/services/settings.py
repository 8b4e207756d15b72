"""Settings dataclass and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..ai.client import ClientSettings
from ..ai.errors import ConfigurationError
from ..ai.mcp.types import ProviderConfig

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "FernetSecretProvider",
    "BUILTIN_PROVIDERS",
    "CONTEXT_MODES",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".termagent"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "TERMAGENT_API_KEY": "api_key",
    "TERMAGENT_BASE_URL": "base_url",
    "TERMAGENT_MODEL": "model",
    "TERMAGENT_CONTEXT_MODE": "context_mode",
    "TERMAGENT_ROLE": "role",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "TERMAGENT_DEBUG_LOGGING": "debug_logging",
    "TERMAGENT_AUTO_APPROVE": "auto_approve",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "TERMAGENT_REQUEST_TIMEOUT": "request_timeout",
    "TERMAGENT_TEMPERATURE": "temperature",
    "TERMAGENT_CONTEXT_TARGET_RATIO": "context_target_ratio",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "TERMAGENT_MAX_CONTEXT_TOKENS": "max_context_tokens",
    "TERMAGENT_MAX_TOOL_CALLS": "max_tool_calls_per_turn",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_API_KEY_FIELD = "api_key_ciphertext"
BUILTIN_PROVIDERS: tuple[str, ...] = ("file-system", "terminal", "todos")
CONTEXT_MODES: tuple[str, ...] = ("drop", "summarize")
ContextMode = Literal["drop", "summarize"]


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    temperature: float = 0.2
    organization: str | None = None
    request_timeout: float = 90.0
    max_retries: int = 3
    max_completion_tokens: int | None = None
    max_context_tokens: int = 128_000
    context_target_ratio: float = 0.8
    context_mode: ContextMode = "drop"
    max_tool_calls_per_turn: int = 25
    stream_retry_attempts: int = 3
    stream_retry_backoff_seconds: float = 1.0
    tool_timeout_seconds: float = 60.0
    command_timeout_seconds: float = 120.0
    provider_timeout_seconds: float = 30.0
    role: str | None = None
    confirm_tools: list[str] = field(default_factory=list)
    auto_approve: bool = False
    builtin_providers: list[str] = field(default_factory=lambda: list(BUILTIN_PROVIDERS))
    mcp_servers: dict[str, dict[str, Any]] = field(default_factory=dict)
    default_headers: dict[str, str] = field(default_factory=dict)
    debug_logging: bool = False

    def client_settings(self) -> ClientSettings:
        return ClientSettings(
            base_url=self.base_url,
            api_key=self.api_key,
            model=self.model,
            organization=self.organization,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            default_headers=dict(self.default_headers) or None,
            debug_logging=self.debug_logging,
        )

    def provider_configs(self) -> List[ProviderConfig]:
        """Parse ``mcp_servers``; a malformed entry raises :class:`ConfigurationError`."""

        configs: List[ProviderConfig] = []
        for name, payload in self.mcp_servers.items():
            if not isinstance(payload, Mapping):
                raise ConfigurationError(f"Provider {name!r} must be configured with an object")
            if payload.get("enabled") is False:
                LOGGER.debug("Provider %s is disabled", name)
                continue
            configs.append(
                ProviderConfig.from_mapping(name, payload, default_timeout=self.provider_timeout_seconds)
            )
        return configs


class FernetSecretProvider:
    """Symmetric encryption with a Fernet key stored beside the settings file."""

    name = "fernet"

    def __init__(self, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    def encrypt(self, secret: str) -> str:
        token = self._get_fernet().encrypt(secret.encode("utf-8"))
        return token.decode("ascii")

    def decrypt(self, token: str) -> str:
        raw = self._get_fernet().decrypt(token.encode("ascii"))
        return raw.decode("utf-8")

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class SecretVault:
    """Encrypts and decrypts the API key for settings persistence."""

    def __init__(self, *, key_path: Path | None = None, provider: FernetSecretProvider | None = None) -> None:
        self._provider = provider or FernetSecretProvider(key_path)

    @property
    def strategy(self) -> str:
        return self._provider.name

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        return f"{self._provider.name}:{self._provider.encrypt(secret)}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, _, payload = token.partition(":")
        if not payload:
            prefix, payload = self._provider.name, token
        if prefix != self._provider.name:
            raise ValueError(f"Unknown secret backend {prefix!r}")
        try:
            return self._provider.decrypt(payload)
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, then apply CLI and environment overrides."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            api_key, migrated = self._decrypt_api_key(payload.pop(_API_KEY_FIELD, None), payload.pop("api_key", None))
            try:
                settings = Settings(**_filter_fields(payload))
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if api_key:
                settings = replace(settings, api_key=api_key)
            if migrated or payload.get("version") != _SETTINGS_VERSION:
                try:
                    self.save(settings)
                except OSError as exc:
                    LOGGER.warning("Failed to migrate settings file: %s", exc)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")
        settings = self._apply_env_overrides(settings)
        return _validated(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings with an atomic replace."""

        body = json.dumps(self._serialize(settings), indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        api_key = data.pop("api_key", "") or ""
        if api_key:
            data[_API_KEY_FIELD] = self._vault.encrypt(api_key)
        data["version"] = _SETTINGS_VERSION
        data["secret_backend"] = self._vault.strategy
        return data

    def _read_payload(self) -> Dict[str, Any]:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

    def _apply_overrides(self, settings: Settings, overrides: Mapping[str, Any], *, source: str) -> Settings:
        allowed = {item.name for item in fields(Settings)}
        filtered = {key: value for key, value in overrides.items() if key in allowed and value is not None}
        unknown = sorted(set(overrides) - allowed)
        if unknown:
            LOGGER.warning("Ignoring unknown %s setting(s): %s", source, ", ".join(unknown))
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings

    def _decrypt_api_key(self, ciphertext: str | None, legacy_plaintext: str | None) -> tuple[str, bool]:
        if ciphertext:
            try:
                return self._vault.decrypt(ciphertext), False
            except ValueError as exc:
                LOGGER.warning("Unable to decrypt API key: %s", exc)
                return "", False
        if legacy_plaintext:
            LOGGER.info("Found a plaintext API key; migrating to encrypted storage.")
            return legacy_plaintext, True
        return "", False


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)} - {"api_key"}
    return {key: value for key, value in payload.items() if key in allowed}


def _validated(settings: Settings) -> Settings:
    if settings.context_mode not in CONTEXT_MODES:
        raise ConfigurationError(
            f"context_mode must be one of {', '.join(CONTEXT_MODES)}; got {settings.context_mode!r}"
        )
    unknown = sorted(set(settings.builtin_providers) - set(BUILTIN_PROVIDERS))
    if unknown:
        raise ConfigurationError(f"Unknown built-in provider(s): {', '.join(unknown)}")
    if settings.max_tool_calls_per_turn < 1:
        raise ConfigurationError("max_tool_calls_per_turn must be at least 1")
    return settings


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
