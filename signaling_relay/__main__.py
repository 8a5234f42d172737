"""
Signaling Relay - `python -m signaling_relay` entry point.
"""

import sys

from signaling_relay.server import main

sys.exit(main())
