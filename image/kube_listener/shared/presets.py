# ---------------------------------------------------------------------------- #

from __future__ import annotations

from enum import Enum, unique
from pathlib import Path
from typing import Any

import yaml

from kube_listener.shared.kubernetes import Client
from kube_listener.shared.listeners import ListenerClass
from kube_listener.shared.util import log

# ---------------------------------------------------------------------------- #


@unique
class ListenerClassPreset(Enum):
    """Sets of ListenerClasses that the reconciler creates on startup, unless
    they already exist."""

    NONE = "none"

    EPHEMERAL_NODES = "ephemeral-nodes"
    """For environments in which pods can move freely between nodes."""

    STABLE_NODES = "stable-nodes"
    """For environments with reliable, long-living nodes."""

    def load(self) -> list[dict[str, Any]]:

        if self is ListenerClassPreset.NONE:
            return []

        directory = Path(__file__).parent / "listener-class-presets"
        path = directory / f"{self.value}.yaml"

        classes = [doc for doc in yaml.safe_load_all(path.read_text()) if doc]

        for obj in classes:
            ListenerClass.from_obj(obj)  # ensure presets are valid

        return classes


async def apply_listener_class_preset(
    client: Client, preset: ListenerClassPreset
) -> None:

    for obj in preset.load():

        created = await client.create_if_missing(obj)

        if created:
            log(f"Created ListenerClass {obj['metadata']['name']}")


# ---------------------------------------------------------------------------- #
