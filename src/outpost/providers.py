"""LLM provider catalog, credential detection, and gateway config rendering.

Detection is a pure function of the credential's prefix. Prefixes are
matched longest first, so a vendor-qualified prefix such as ``sk-ant-``
always wins over the bare ``sk-`` it would otherwise be shadowed by. When
the longest matching prefix belongs to more than one provider, detection
refuses to pick one and the caller has to ask the user (see
:func:`resolve`).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

RUNTIME_CONFIG_VERSION = "2026.1.24"
GATEWAY_PORT = 18789


@dataclass(frozen=True)
class ProviderDescriptor:
    """One upstream inference provider."""

    id: str
    name: str
    env_var: str
    default_model: str
    key_prefixes: tuple[str, ...]
    needs_routing: bool = False
    base_url: str | None = None


# Declaration order is the display order. Detection order is derived from
# prefix length, not from this list.
PROVIDERS: tuple[ProviderDescriptor, ...] = (
    ProviderDescriptor(
        id="anthropic",
        name="Anthropic (Claude)",
        env_var="ANTHROPIC_API_KEY",
        default_model="anthropic/claude-sonnet-4-5",
        key_prefixes=("sk-ant-",),
    ),
    ProviderDescriptor(
        id="openrouter",
        name="OpenRouter (100+ models)",
        env_var="OPENROUTER_API_KEY",
        default_model="openrouter/anthropic/claude-3.5-sonnet",
        key_prefixes=("sk-or-",),
    ),
    ProviderDescriptor(
        id="openai",
        name="OpenAI (GPT)",
        env_var="OPENAI_API_KEY",
        default_model="openai/gpt-4o",
        key_prefixes=("sk-proj-", "sk-"),
    ),
    ProviderDescriptor(
        id="google",
        name="Google (Gemini)",
        env_var="GEMINI_API_KEY",
        default_model="google/gemini-2.0-flash",
        key_prefixes=("AIza",),
    ),
    ProviderDescriptor(
        id="groq",
        name="Groq (Fast Inference)",
        env_var="GROQ_API_KEY",
        default_model="groq/llama-3.3-70b-versatile",
        key_prefixes=("gsk_",),
    ),
    ProviderDescriptor(
        id="xai",
        name="xAI (Grok)",
        env_var="XAI_API_KEY",
        default_model="xai/grok-4",
        key_prefixes=("xai-",),
    ),
    # No distinctive key prefix; only selectable explicitly.
    ProviderDescriptor(
        id="mistral",
        name="Mistral AI",
        env_var="MISTRAL_API_KEY",
        default_model="mistral/mistral-large-latest",
        key_prefixes=(),
    ),
    ProviderDescriptor(
        id="moonshot",
        name="Moonshot (Kimi)",
        env_var="MOONSHOT_API_KEY",
        default_model="moonshot/kimi-k2.5",
        key_prefixes=("sk-",),
        needs_routing=True,
        base_url="https://api.moonshot.ai/v1",
    ),
)

_BY_ID: dict[str, ProviderDescriptor] = {p.id: p for p in PROVIDERS}


# ── Detection ────────────────────────────────────────────────────────────────


def get_provider(provider_id: str | None) -> ProviderDescriptor | None:
    if not provider_id:
        return None
    return _BY_ID.get(provider_id)


def _best_matches(credential: str) -> list[ProviderDescriptor]:
    """Providers owning the longest prefix that matches ``credential``."""
    key = credential.strip()
    best_len = 0
    matches: list[ProviderDescriptor] = []
    for provider in PROVIDERS:
        longest = max(
            (len(prefix) for prefix in provider.key_prefixes if prefix and key.startswith(prefix)),
            default=0,
        )
        if longest == 0:
            continue
        if longest > best_len:
            best_len = longest
            matches = [provider]
        elif longest == best_len:
            matches.append(provider)
    return matches


def detect(credential: str | None) -> ProviderDescriptor | None:
    """Return the single provider the credential's prefix identifies.

    Returns None for unknown prefixes and for ambiguous ones; use
    :func:`ambiguous` to tell the two apart.
    """
    if not credential:
        return None
    matches = _best_matches(credential)
    return matches[0] if len(matches) == 1 else None


def ambiguous(credential: str | None) -> list[ProviderDescriptor]:
    """Providers that share the credential's most specific matching prefix.

    Empty unless more than one provider matches equally well.
    """
    if not credential:
        return []
    matches = _best_matches(credential)
    return matches if len(matches) > 1 else []


@dataclass(frozen=True)
class ProviderResolution:
    """Result of :func:`resolve`: a provider, a request to choose, or neither."""

    provider: ProviderDescriptor | None = None
    candidates: tuple[ProviderDescriptor, ...] = ()

    @property
    def resolved(self) -> bool:
        return self.provider is not None

    @property
    def needs_selection(self) -> bool:
        return self.provider is None and len(self.candidates) > 1


def resolve(credential: str, provider_id: str | None = None) -> ProviderResolution:
    """Two-phase provider resolution.

    Phase 1 (no ``provider_id``): detect from the prefix. An ambiguous
    credential yields a resolution carrying the candidate set, which the
    caller turns into a "please choose" response.

    Phase 2 (explicit ``provider_id``): direct catalog lookup, bypassing
    detection. An unknown id yields an unresolved result.
    """
    if provider_id:
        return ProviderResolution(provider=get_provider(provider_id))

    candidates = ambiguous(credential)
    if candidates:
        return ProviderResolution(candidates=tuple(candidates))
    return ProviderResolution(provider=detect(credential))


# ── Display Helpers ──────────────────────────────────────────────────────────


def supported_providers_text() -> str:
    """e.g. 'Anthropic • OpenRouter • OpenAI • ...' (built-in providers only)."""
    return " • ".join(p.name.split(" ")[0] for p in PROVIDERS if not p.needs_routing)


def key_format_help() -> list[str]:
    lines = []
    for provider in PROVIDERS:
        if not provider.key_prefixes or provider.needs_routing:
            continue
        lines.append(f"{provider.key_prefixes[-1] + '...':<13} → {provider.name}")
    return lines


def mask_credential(key: str | None) -> str:
    """Show enough of a key to recognise it without revealing it."""
    if not key or len(key) <= 16:
        return "***"
    return f"{key[:12]}...{key[-4:]}"


# ── Config Rendering ─────────────────────────────────────────────────────────


@dataclass
class RenderOptions:
    """Inputs to :func:`render_config` beyond the provider and credential."""

    gateway_token: str
    model: str | None = None
    telegram_bot_token: str | None = None
    telegram_user_id: str | None = None
    workspace: str = "/home/user/clawd"
    heartbeat_minutes: int = 30
    gateway_port: int = GATEWAY_PORT
    extra_env: dict[str, str] = field(default_factory=dict)


def render_config(
    provider: ProviderDescriptor, credential: str, options: RenderOptions
) -> dict[str, Any]:
    """Build the gateway runtime config document.

    Pure data transformation: identical inputs give an identical document
    (including key order).
    """
    model = options.model or provider.default_model

    doc: dict[str, Any] = {
        "meta": {"lastTouchedVersion": RUNTIME_CONFIG_VERSION},
        "env": {provider.env_var: credential, **options.extra_env},
        "auth": {
            "profiles": {
                f"{provider.id}:default": {"provider": provider.id, "mode": "api_key"},
            },
        },
        "agents": {
            "defaults": {
                "workspace": options.workspace,
                "model": {"primary": model},
                "compaction": {"mode": "safeguard"},
                "maxConcurrent": 4,
                "subagents": {"maxConcurrent": 8},
                "heartbeat": {
                    "every": f"{options.heartbeat_minutes}m",
                    "target": "last",
                    "activeHours": {"start": "00:00", "end": "24:00"},
                    "includeReasoning": True,
                },
            },
        },
    }

    if provider.needs_routing and provider.base_url:
        model_id = model.removeprefix(f"{provider.id}/")
        doc["models"] = {
            "mode": "merge",
            "providers": {
                provider.id: {
                    "baseUrl": provider.base_url,
                    "apiKey": f"${{{provider.env_var}}}",
                    "api": "openai-completions",
                    "models": [{"id": model_id, "name": model_id}],
                },
            },
        }

    doc["messages"] = {"ackReactionScope": "group-mentions"}
    doc["commands"] = {"native": "auto", "nativeSkills": "auto"}

    if options.telegram_bot_token:
        telegram: dict[str, Any] = {
            "enabled": True,
            "botToken": options.telegram_bot_token,
            "dmPolicy": "allowlist",
        }
        if options.telegram_user_id:
            telegram["allowFrom"] = [options.telegram_user_id]
        telegram["groupPolicy"] = "allowlist"
        doc["channels"] = {"telegram": telegram}

    doc["gateway"] = {
        "port": options.gateway_port,
        "mode": "local",
        "bind": "loopback",
        "auth": {"mode": "token", "token": options.gateway_token},
    }
    doc["plugins"] = {"entries": {"telegram": {"enabled": True}}}
    return doc


def render_config_json(
    provider: ProviderDescriptor, credential: str, options: RenderOptions
) -> str:
    return json.dumps(render_config(provider, credential, options), indent=2)
