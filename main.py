"""skyport — entry point.

Equivalent to the ``skyport`` console script; useful when running from a
checkout or a frozen build.
"""

from __future__ import annotations

import sys

from skyport.cli import main

if __name__ == "__main__":
    sys.exit(main())
