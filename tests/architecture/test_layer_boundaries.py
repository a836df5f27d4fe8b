"""
Import-boundary enforcement.

Dependency direction:

    billing_services  ->  billing_batch  ->  billing_kernel
    billing_services  ->  billing_config
    billing_config    ->  billing_kernel (logging), billing_batch (cron parsing)

1. Kernel isolation  -- billing_kernel/** may not import any outer layer.
2. Domain purity     -- billing_kernel/domain/** may not import SQLAlchemy,
                        models, db or services.
3. Batch boundary    -- billing_batch/** may not import billing_services.
4. Config entrypoint -- only billing_config/__init__.py and the tests may
                        reach billing_config.loader directly.

All scanning is done via AST.
"""

import ast
import glob
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]


def _python_files(package: str) -> list[str]:
    return sorted(glob.glob(f"{ROOT / package}/**/*.py", recursive=True))


def _extract_imports(filepath: str) -> list[tuple[int, str]]:
    """Return (line_number, module) for every import in *filepath*."""
    tree = ast.parse(Path(filepath).read_text(), filename=filepath)
    results: list[tuple[int, str]] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                results.append((node.lineno, alias.name))
        elif isinstance(node, ast.ImportFrom) and node.module:
            results.append((node.lineno, node.module))
    return results


def _matches_any(module: str, prefixes: tuple[str, ...]) -> bool:
    return any(module == p or module.startswith(f"{p}.") for p in prefixes)


def _violations(package: str, forbidden: tuple[str, ...]) -> list[str]:
    found = []
    for path in _python_files(package):
        for lineno, module in _extract_imports(path):
            if _matches_any(module, forbidden):
                found.append(f"{Path(path).relative_to(ROOT)}:{lineno} imports {module}")
    return found


class TestLayerBoundaries:

    @pytest.mark.parametrize(
        "package, forbidden",
        [
            ("billing_kernel", ("billing_batch", "billing_services", "billing_config")),
            ("billing_kernel/domain", ("sqlalchemy", "billing_kernel.models", "billing_kernel.db", "billing_kernel.services")),
            ("billing_batch", ("billing_services",)),
        ],
    )
    def test_no_upward_imports(self, package, forbidden):
        assert _python_files(package), f"no sources found under {package}"
        violations = _violations(package, forbidden)
        assert not violations, "\n".join(violations)

    def test_loader_only_reached_through_entrypoint(self):
        allowed = {ROOT / "billing_config" / "__init__.py"}
        offenders = []
        for package in ("billing_kernel", "billing_batch", "billing_services"):
            for path in _python_files(package):
                if Path(path) in allowed:
                    continue
                for lineno, module in _extract_imports(path):
                    if module == "billing_config.loader":
                        offenders.append(f"{path}:{lineno}")
        assert not offenders, "\n".join(offenders)
