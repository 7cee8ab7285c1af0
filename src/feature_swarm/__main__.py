"""Allow ``python -m feature_swarm``."""

import sys

from .cli import main

sys.exit(main())
