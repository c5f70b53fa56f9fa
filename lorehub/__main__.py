"""Allow running lorehub as ``python -m lorehub``."""

import sys

from lorehub.cli import main

sys.exit(main())
