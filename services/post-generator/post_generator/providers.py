"""Fallback plan configuration.

Plans are read from a YAML file with one ordered provider list per media
kind; list order is fallback order::

    poll_interval_s: 10
    max_poll_attempts: 60
    image:
      - id: imagen-4
        url: http://image-gen:8010/imagen-4
      - id: imagen-3
        url: http://image-gen:8010/imagen-3
    video:
      - id: veo-3
        url: http://video-gen:8011/veo-3
        max_poll_attempts: 90
    music:
      - id: diffrhythm
        url: http://music-gen:8012
        download: true
        options: {steps: 32}
"""

from __future__ import annotations

import logging
import os

import httpx
import yaml

from .models import FallbackStep
from .nodes.media_clients import HttpJobProvider

log = logging.getLogger(__name__)

MEDIA_KINDS = ("image", "video", "music")


class ProviderConfigError(ValueError):
    """The providers file is present but malformed."""


def empty_plans() -> dict[str, list[FallbackStep]]:
    return {kind: [] for kind in MEDIA_KINDS}


def load_provider_config(path: str) -> dict:
    """Read the raw providers YAML; a missing file yields an empty config."""
    if not os.path.exists(path):
        log.warning("providers config not found at path=%s -- media generation disabled", path)
        return {}
    with open(path, "r") as f:
        config = yaml.safe_load(f) or {}
    if not isinstance(config, dict):
        raise ProviderConfigError(f"{path}: top level must be a mapping")
    return config


def build_plans(config: dict, client: httpx.AsyncClient) -> dict[str, list[FallbackStep]]:
    """Turn a parsed providers config into one fallback plan per media kind."""
    plans = empty_plans()
    default_interval = float(config.get("poll_interval_s", 10.0))
    default_attempts = int(config.get("max_poll_attempts", 60))

    for kind in MEDIA_KINDS:
        entries = config.get(kind) or []
        if not isinstance(entries, list):
            raise ProviderConfigError(f"{kind}: expected a list of providers")
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("id") or not entry.get("url"):
                raise ProviderConfigError(f"{kind}: every provider needs 'id' and 'url'")
            provider = HttpJobProvider(
                provider_id=entry["id"],
                client=client,
                base_url=entry["url"],
                options=entry.get("options"),
                poll_interval_s=float(entry.get("poll_interval_s", default_interval)),
                max_poll_attempts=int(entry.get("max_poll_attempts", default_attempts)),
                download=bool(entry.get("download", False)),
            )
            plans[kind].append(FallbackStep(provider_id=provider.provider_id, generate=provider))

    for kind, plan in plans.items():
        log.info("%s plan: %s", kind, " -> ".join(s.provider_id for s in plan) or "(none)")
    return plans


def load_plans(path: str, client: httpx.AsyncClient) -> dict[str, list[FallbackStep]]:
    return build_plans(load_provider_config(path), client)
