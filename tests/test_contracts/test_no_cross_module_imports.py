"""
Contract tests — Module boundary enforcement.

Scans all Python files under backend/modules/ for imports that reference
another module's route logic or service objects directly. Services reach each
other through the registry (core/registry.py) and the event bus; only pure
data types and pure functions may be imported across module lines.

What is ALLOWED (in the allowlist):
- Importing from another module's models.py  (shared ORM types)
- Importing from another module's schemas.py (shared Pydantic types)
- Importing the license document model (licenses/document.py)
- Importing the pure policy evaluator (policy/evaluator.py)

What is FLAGGED as a violation:
- Importing from another module's routes.py or service.py
  (the object belongs in the registry behind an interface name)

Run without container: pytest tests/test_contracts/test_no_cross_module_imports.py -v
"""

import re
import sys
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parents[2] / "backend"
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

MODULES_DIR = BACKEND_DIR / "modules"


# ---------------------------------------------------------------------------
# Allowlist — known legitimate cross-module imports.
#
# Format: each entry is a substring that, if present in an import line,
# exempts that line from being flagged as a violation.
# ---------------------------------------------------------------------------

ALLOWED_PATTERNS = [
    # Shared data types: modules read from each other's models and schemas.
    ".models import",
    ".schemas import",

    # LicenseDocument and CamelModel: the canonical document every module speaks.
    ".document import",

    # evaluate() is a pure function of (document, context); tokens uses it for
    # the rsl grant without going through AccessService.
    ".evaluator import",
]


def _is_allowed(import_line: str) -> bool:
    return any(pattern in import_line for pattern in ALLOWED_PATTERNS)


def _iter_cross_module_imports():
    """Yield (py_file, lineno, own_module, ref_module, line) for every foreign import."""
    for module_dir in sorted(MODULES_DIR.iterdir()):
        if not module_dir.is_dir() or module_dir.name.startswith("_"):
            continue

        own_module = module_dir.name

        for py_file in sorted(module_dir.rglob("*.py")):
            if "__pycache__" in str(py_file):
                continue

            lines = py_file.read_text(encoding="utf-8").splitlines()
            for lineno, raw_line in enumerate(lines, start=1):
                stripped = raw_line.strip()
                if not stripped.startswith(("from modules.", "import modules.")):
                    continue

                m = re.search(r'(?:from|import)\s+modules\.([a-z_]+)', stripped)
                if not m or m.group(1) == own_module:
                    continue

                yield py_file, lineno, own_module, m.group(1), stripped


def _find_violations() -> list[str]:
    violations = []
    for py_file, lineno, _, _, stripped in _iter_cross_module_imports():
        if _is_allowed(stripped):
            continue
        rel_path = py_file.relative_to(BACKEND_DIR.parent)
        violations.append(f"{rel_path}:{lineno}: {stripped}")
    return violations


# ---------------------------------------------------------------------------
# The test
# ---------------------------------------------------------------------------

class TestNoCrossModuleImports:
    """
    Enforce module boundary contracts.

    Any import that is neither a self-import nor in the allowlist must be
    refactored to go through:
      - core/registry.py (registry.require("LicenseService") and friends)
      - core/events.py   (for event-driven communication)
    """

    def test_no_direct_cross_module_service_imports(self):
        violations = _find_violations()
        assert not violations, (
            f"Cross-module route/service imports found ({len(violations)} violation(s)).\n"
            "These create direct coupling between modules. Refactor to use:\n"
            "  - core/registry.py for synchronous service access\n"
            "  - core/events.py for asynchronous event-driven communication\n\n"
            "Violations:\n" + "\n".join(f"  {v}" for v in violations)
        )

    def test_allowlist_patterns_are_non_empty_strings(self):
        for pattern in ALLOWED_PATTERNS:
            assert isinstance(pattern, str) and pattern.strip(), (
                f"Allowlist contains an invalid entry: {pattern!r}"
            )

    def test_modules_directory_exists(self):
        assert MODULES_DIR.is_dir(), f"backend/modules/ not found at {MODULES_DIR}"

    def test_at_least_four_modules_scanned(self):
        modules = [d for d in MODULES_DIR.iterdir() if d.is_dir() and not d.name.startswith("_")]
        assert len(modules) >= 4, (
            f"Expected at least 4 module directories, found {len(modules)}: "
            f"{[d.name for d in modules]}"
        )

    def test_licenses_imports_no_other_module(self):
        """licenses sits at the bottom of the dependency graph."""
        offenders = [
            line for _, _, own, _, line in _iter_cross_module_imports()
            if own == "licenses"
        ]
        assert not offenders, f"modules.licenses must not import other modules: {offenders}"
