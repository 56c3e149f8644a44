"""Keyboard/button commands mapped onto engine operations."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from .engine import AnnotationEngine

ZOOM_STEP = 1.2

KEY_BINDINGS: Dict[str, str] = {
    "ctrl+z": "undo",
    "meta+z": "undo",
    "ctrl+y": "redo",
    "meta+y": "redo",
    "ctrl+shift+z": "redo",
    "meta+shift+z": "redo",
    "escape": "cancel",
    "ctrl+s": "save",
    "meta+s": "save",
    "delete": "delete",
    "backspace": "delete",
    "alt+down": "next_step",
    "alt+up": "previous_step",
    "ctrl+=": "zoom_in",
    "ctrl++": "zoom_in",
    "ctrl+-": "zoom_out",
}

_MODIFIER_ORDER = ("ctrl", "meta", "alt", "shift")
_ALIASES = {
    "control": "ctrl",
    "cmd": "meta",
    "command": "meta",
    "option": "alt",
    "esc": "escape",
    "del": "delete",
    "return": "enter",
}


def normalize_chord(chord: str) -> str:
    """Canonical ``mod+mod+key`` form: lowercase, modifiers in a fixed order."""
    text = chord.strip().lower()
    if not text:
        return ""
    if text.endswith("++"):
        parts = [p for p in text[:-2].split("+") if p] + ["+"]
    else:
        parts = [p for p in text.split("+") if p]
    if not parts:
        return text
    parts = [_ALIASES.get(p, p) for p in parts]
    modifiers = sorted({p for p in parts[:-1] if p in _MODIFIER_ORDER}, key=_MODIFIER_ORDER.index)
    return "+".join([*modifiers, parts[-1]])


@dataclass
class DispatchResult:
    command: Optional[str]
    handled: bool
    reason: Optional[str] = None
    value: Any = None


class CommandDispatcher:
    """Routes discrete commands to the engine; independent of any widget toolkit."""

    def __init__(
        self,
        engine: AnnotationEngine,
        *,
        zoom: Optional[Callable[[float], None]] = None,
        bindings: Optional[Dict[str, str]] = None,
    ) -> None:
        self.engine = engine
        self.zoom = zoom
        self.bindings = {normalize_chord(k): v for k, v in (bindings or KEY_BINDINGS).items()}
        self.selection: Optional[Tuple[str, int]] = None
        self._commands: Dict[str, Callable[[], Any]] = {
            "undo": engine.undo,
            "redo": engine.redo,
            "cancel": engine.cancel,
            "save": engine.save_now,
            "delete": self._delete_selection,
            "next_step": engine.next_step,
            "previous_step": engine.previous_step,
            "validate": engine.validate_all,
            "zoom_in": lambda: self._zoom(ZOOM_STEP),
            "zoom_out": lambda: self._zoom(1 / ZOOM_STEP),
        }

    @property
    def command_names(self) -> list[str]:
        return sorted(self._commands)

    def select(self, field_type_id: Optional[str], index: int = 0) -> None:
        if field_type_id is None:
            self.selection = None
            return
        self.engine.field_types.get(field_type_id)
        self.selection = (field_type_id, index)

    def dispatch(self, command: str) -> DispatchResult:
        if command.startswith("start:"):
            _, _, rest = command.partition(":")
            field_type_id, _, sub_type = rest.partition(":")
            try:
                started = self.engine.start_annotation(field_type_id, sub_type or None)
            except (KeyError, ValueError) as exc:
                return DispatchResult(command, False, reason=str(exc))
            return DispatchResult(command, started, value=started)

        handler = self._commands.get(command)
        if handler is None:
            return DispatchResult(command, False, reason=f"Unknown command: {command}")
        if command in ("zoom_in", "zoom_out") and self.zoom is None:
            return DispatchResult(command, False, reason="Zoom is not available in this host.")
        return DispatchResult(command, True, value=handler())

    def handle_key(self, chord: str, *, typing_in_text_field: bool = False) -> DispatchResult:
        command = self.bindings.get(normalize_chord(chord))
        if command is None:
            return DispatchResult(None, False, reason=f"No binding for {chord}")
        if typing_in_text_field:
            return DispatchResult(command, False, reason="Keyboard focus is in a text field.")
        return self.dispatch(command)

    def _delete_selection(self) -> bool:
        if self.selection is None:
            return False
        field_type_id, index = self.selection
        spec = self.engine.field_types.get(field_type_id)
        removed = self.engine.remove_annotation(field_type_id, index if spec.allow_multiple else None)
        self.selection = None
        return removed

    def _zoom(self, factor: float) -> None:
        if self.zoom is not None:
            self.zoom(factor)


__all__ = ["CommandDispatcher", "DispatchResult", "KEY_BINDINGS", "normalize_chord"]
