"""Allow ``python -m sentinel`` to run the connectivity diagnostics."""

import sys

from sentinel.diagnostics import main

sys.exit(main())
