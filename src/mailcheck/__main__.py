# =============================================================================
# mailcheck Entry Point for `python -m mailcheck`
# =============================================================================
# Equivalent to running the 'mailcheck' command after installation.
# =============================================================================

import sys

from mailcheck.app import main

if __name__ == "__main__":
    sys.exit(main())
