"""
Structured builder for the Pulp ``settings.py`` payload.

Settings are collected in an ordered mapping and rendered to Python source
only when the secret is built, so individual settings can be inspected and
tested without caring about section order or quoting.
"""
from collections import OrderedDict
from typing import Any, Dict, Iterator, Mapping, Tuple

DO_NOT_EDIT_MESSAGE = (
    "# This file is managed by the Pulp operator.\n"
    "# DO NOT EDIT IT: changes are overwritten on the next reconciliation.\n"
    "# Use the pulp_settings field of the Pulp CR to add custom settings."
)


def render_value(value: Any) -> str:
    """Render a setting value as a Python literal."""
    if isinstance(value, dict):
        items = ", ".join(f"{render_value(k)}: {render_value(v)}" for k, v in value.items())
        return "{" + items + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(render_value(v) for v in value) + "]"
    if isinstance(value, str):
        return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'
    return repr(value)


class SettingsPayload:
    def __init__(self, initial: Mapping[str, Any] = ()):
        self._settings: "OrderedDict[str, Any]" = OrderedDict()
        self.update(initial)

    def set(self, key: str, value: Any) -> "SettingsPayload":
        self._settings[key] = value
        return self

    def update(self, mapping: Mapping[str, Any]) -> "SettingsPayload":
        for key, value in dict(mapping).items():
            self.set(key, value)
        return self

    def add_custom(self, custom: Dict[str, Any]) -> "SettingsPayload":
        """User-provided settings; keys are upper-cased and override defaults."""
        for key, value in custom.items():
            self.set(key.upper(), value)
        return self

    def get(self, key: str, default: Any = None) -> Any:
        return self._settings.get(key, default)

    def __contains__(self, key: str) -> bool:
        return key in self._settings

    def __len__(self) -> int:
        return len(self._settings)

    def items(self) -> Iterator[Tuple[str, Any]]:
        return iter(self._settings.items())

    def render(self) -> str:
        lines = [DO_NOT_EDIT_MESSAGE]
        lines += [f"{key} = {render_value(value)}" for key, value in self._settings.items()]
        return "\n".join(lines) + "\n"
