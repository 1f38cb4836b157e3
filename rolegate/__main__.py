"""Run the rolegate CLI: python -m rolegate ..."""

import sys

from rolegate.cli import main

if __name__ == "__main__":
    sys.exit(main())
