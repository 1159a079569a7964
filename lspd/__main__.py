"""python -m lspd"""

import sys

from .cli import main

sys.exit(main())
