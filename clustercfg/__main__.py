"""Allow running as: python -m clustercfg"""

import sys

from clustercfg.cli import main

sys.exit(main())
