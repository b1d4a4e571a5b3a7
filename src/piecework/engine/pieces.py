"""Piece definitions: YAML loading and reference validation."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import yaml

from piecework.engine.models import (
    TERMINAL_MOVEMENTS,
    Movement,
    PermissionMode,
    Piece,
    ProviderKind,
    Rule,
    SessionMode,
)
from piecework.engine.transitions import parse_condition
from piecework.errors import PieceNotFound, UnknownMovement

logger = logging.getLogger(__name__)

BUILTIN_PIECES_DIR = Path(__file__).resolve().parent.parent / "pieces"
DEFAULT_PIECE_NAME = "default"


def validate_piece(piece: Piece, *, start_movement: str | None = None) -> None:
    """Raise UnknownMovement for any reference outside the piece."""

    names = set(piece.movement_names())
    every_name = [movement.name for movement in piece.all_movements()]
    if len(set(every_name)) != len(every_name):
        raise ValueError(f'Piece "{piece.name}" has duplicate movement names')
    if piece.max_movements < 1:
        raise ValueError(f'Piece "{piece.name}" max_movements must be >= 1')
    if piece.initial_movement not in names:
        raise UnknownMovement(piece.initial_movement, piece=piece.name)
    if start_movement is not None and start_movement not in names:
        raise UnknownMovement(start_movement, piece=piece.name)
    for movement in piece.movements:
        for sub in movement.parallel:
            if sub.parallel:
                raise ValueError(
                    f'Parallel sub-movement "{sub.name}" cannot have its own sub-movements',
                )
    for movement in piece.all_movements():
        for rule in movement.rules:
            if rule.next not in names and rule.next not in TERMINAL_MOVEMENTS:
                raise UnknownMovement(rule.next, piece=piece.name)
            for constituent in rule.aggregate_over:
                if constituent not in every_name:
                    raise UnknownMovement(constituent, piece=piece.name)


def parse_piece(data: Mapping[str, Any], *, source: str = "<memory>") -> Piece:
    """Build a validated Piece from a YAML mapping."""

    if not isinstance(data, Mapping):
        raise ValueError(f"Piece definition must be a mapping: {source}")
    raw_movements = data.get("movements")
    if not isinstance(raw_movements, list) or not raw_movements:
        raise ValueError(f"Piece definition needs a non-empty movements list: {source}")

    movements = tuple(_parse_movement(item, source=source) for item in raw_movements)
    piece = Piece(
        name=str(data.get("name") or Path(source).stem),
        description=str(data.get("description") or ""),
        movements=movements,
        initial_movement=str(data.get("initial_movement") or movements[0].name),
        max_movements=int(data.get("max_movements", 10)),
    )
    validate_piece(piece)
    return piece


def load_piece_file(path: Path) -> Piece:
    data = yaml.safe_load(path.read_text("utf-8"))
    return parse_piece(data, source=str(path))


class PieceLoader:
    """Resolve piece names against project and built-in directories."""

    def __init__(self, search_dirs: Iterable[Path] = ()) -> None:
        self.search_dirs = [*search_dirs, BUILTIN_PIECES_DIR]

    def load(self, name_or_path: str | None) -> Piece:
        name = name_or_path or DEFAULT_PIECE_NAME
        candidate = Path(name)
        if candidate.suffix in {".yaml", ".yml"} and candidate.is_file():
            return load_piece_file(candidate)
        for directory in self.search_dirs:
            for suffix in (".yaml", ".yml"):
                path = directory / f"{name}{suffix}"
                if path.is_file():
                    logger.debug("Loading piece %s from %s", name, path)
                    return load_piece_file(path)
        raise PieceNotFound(name)

    def available(self) -> list[str]:
        names: set[str] = set()
        for directory in self.search_dirs:
            if not directory.is_dir():
                continue
            for path in directory.iterdir():
                if path.suffix in {".yaml", ".yml"}:
                    names.add(path.stem)
        return sorted(names)


def _parse_movement(item: Any, *, source: str) -> Movement:
    if not isinstance(item, Mapping) or not item.get("name"):
        raise ValueError(f"Every movement needs a name: {source}")
    allowed_tools = item.get("allowed_tools")
    return Movement(
        name=str(item["name"]),
        persona=item.get("persona"),
        instruction=str(item.get("instruction") or ""),
        rules=tuple(_parse_rule(rule, source=source) for rule in item.get("rules") or ()),
        provider=_optional_enum(ProviderKind, item.get("provider")),
        model=item.get("model"),
        permission_mode=_optional_enum(PermissionMode, item.get("permission_mode")),
        required_permission_mode=_optional_enum(
            PermissionMode,
            item.get("required_permission_mode"),
        ),
        edit=item.get("edit"),
        allowed_tools=tuple(allowed_tools) if allowed_tools is not None else None,
        output_schema=bool(item.get("output_schema", False)),
        session=SessionMode(item.get("session", SessionMode.CONTINUE.value)),
        parallel=tuple(_parse_movement(sub, source=source) for sub in item.get("parallel") or ()),
    )


def _parse_rule(item: Any, *, source: str) -> Rule:
    if not isinstance(item, Mapping) or "condition" not in item or "next" not in item:
        raise ValueError(f"Every rule needs condition and next: {source}")
    condition = str(item["condition"])
    kind, _ = parse_condition(condition)
    over = item.get("over") or ()
    return Rule(
        condition=condition,
        next=str(item["next"]),
        kind=kind,
        aggregate_over=tuple(str(name) for name in over),
    )


def _optional_enum(enum_type: type, value: Any) -> Any:
    if value is None:
        return None
    try:
        return enum_type(str(value).lower())
    except ValueError as error:
        raise ValueError(f"Unsupported {enum_type.__name__} value: {value!r}") from error
