"""Validate Python layer import boundaries for kidstel_agent."""

from __future__ import annotations

import ast
from pathlib import Path

PACKAGE = "kidstel_agent"
PROJECT_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_SOURCE_ROOT = PROJECT_ROOT / "src" / PACKAGE
KNOWN_LAYERS = {"api", "core", "adapters", "cli", "domain"}
RULES: dict[str, set[str]] = {
    "domain": {"core", "api", "adapters", "cli"},
    "core": {"api", "adapters", "cli"},
    "adapters": {"api", "cli"},
}


def _layer_for_path(path: Path, source_root: Path) -> str | None:
    try:
        relative = path.relative_to(source_root)
    except ValueError:
        return None
    if len(relative.parts) < 2:
        return None
    return relative.parts[0]


def _layer_from_absolute_module(module_name: str) -> str | None:
    if not module_name.startswith(f"{PACKAGE}."):
        return None
    candidate = module_name.split(".")[1]
    return candidate if candidate in KNOWN_LAYERS else None


def _resolve_relative_base(path: Path, source_root: Path, level: int) -> list[str]:
    relative = path.relative_to(source_root)
    package_parts = [PACKAGE, *relative.with_suffix("").parts][:-1]
    # level 1 is the containing package itself.
    if level > len(package_parts):
        return []
    return package_parts[: len(package_parts) - level + 1]


def _layers_for_module(module: str, names: list[str]) -> set[str]:
    direct = _layer_from_absolute_module(module)
    if direct is not None:
        return {direct}
    if module == PACKAGE:
        return {name for name in names if name in KNOWN_LAYERS}
    return set()


def _imported_layers_from_node(
    node: ast.Import | ast.ImportFrom,
    path: Path,
    source_root: Path,
) -> set[str]:
    if isinstance(node, ast.Import):
        layers: set[str] = set()
        for alias in node.names:
            layer = _layer_from_absolute_module(alias.name)
            if layer is not None:
                layers.add(layer)
        return layers

    names = [alias.name for alias in node.names]
    if node.level == 0:
        return _layers_for_module(node.module or "", names)

    base_parts = _resolve_relative_base(path, source_root, node.level)
    if not base_parts:
        return set()
    absolute_parts = [*base_parts, *node.module.split(".")] if node.module else base_parts
    return _layers_for_module(".".join(absolute_parts), names)


def check_file(path: Path, source_root: Path = DEFAULT_SOURCE_ROOT) -> list[str]:
    layer = _layer_for_path(path, source_root)
    banned_layers = RULES.get(layer or "", set())
    if not banned_layers:
        return []

    tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
    violations: list[str] = []
    for node in ast.walk(tree):
        if not isinstance(node, (ast.Import, ast.ImportFrom)):
            continue
        for imported_layer in sorted(_imported_layers_from_node(node, path, source_root)):
            if imported_layer in banned_layers:
                violations.append(f"{path}: {layer} must not import {PACKAGE}.{imported_layer}")
    return violations


def check_import_boundaries(source_root: Path = DEFAULT_SOURCE_ROOT) -> list[str]:
    violations: list[str] = []
    for path in sorted(source_root.rglob("*.py")):
        violations.extend(check_file(path, source_root))
    return violations


def main() -> None:
    violations = check_import_boundaries()
    if violations:
        raise SystemExit("\n".join(violations))
    print("import boundary checks passed")


if __name__ == "__main__":
    main()
