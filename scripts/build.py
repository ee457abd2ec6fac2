"""skyport build script.

Orchestrates:
  1. PyInstaller one-file console build (descriptor template bundled)
  2. Output verification

Usage::

    python scripts/build.py
"""

from __future__ import annotations

import logging
import subprocess
import sys
from pathlib import Path

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
logger = logging.getLogger(__name__)

# Locate project root relative to this script
PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = PROJECT_ROOT / "skyport" / "data"
EXE_NAME = "skyport.exe" if sys.platform == "win32" else "skyport"
DIST_EXE = PROJECT_ROOT / "dist" / EXE_NAME


def _step1_pyinstaller() -> None:
    """Run PyInstaller to produce a single-file console executable."""
    logger.info("Step 1 — Running PyInstaller …")

    if not (DATA_DIR / "template.npdm").is_file():
        logger.error("Descriptor template missing: %s", DATA_DIR / "template.npdm")
        sys.exit(1)

    # Platform separator for --add-data
    sep = ";" if sys.platform == "win32" else ":"

    cmd = [
        sys.executable, "-m", "PyInstaller",
        "--onefile",
        "--console",
        "--name=skyport",
        f"--add-data={DATA_DIR}{sep}skyport/data",
        "--collect-submodules=rich",
        "--clean",
        "--noconfirm",
        str(PROJECT_ROOT / "main.py"),
    ]

    logger.info("Command: %s", " ".join(cmd))
    result = subprocess.run(cmd, cwd=str(PROJECT_ROOT))
    if result.returncode != 0:
        logger.error("PyInstaller failed (exit code %d)", result.returncode)
        sys.exit(result.returncode)

    logger.info("PyInstaller completed ✓")


def _step2_verify() -> None:
    """Confirm the executable was produced and report its size."""
    logger.info("Step 2 — Verifying output …")

    if not DIST_EXE.is_file():
        logger.error("Expected executable not found: %s", DIST_EXE)
        sys.exit(1)

    size_mb = DIST_EXE.stat().st_size / (1024 * 1024)
    print(f"\nBuild complete!\n  {DIST_EXE}\n  Size: {size_mb:.1f} MB")


def main() -> None:
    """Run both build steps sequentially."""
    _step1_pyinstaller()
    _step2_verify()


if __name__ == "__main__":
    main()
