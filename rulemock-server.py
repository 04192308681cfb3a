#!/usr/bin/env python3
"""
rulemock Server CLI

Run rulemock from a source checkout without installing it.

Examples:
    python3 rulemock-server.py admin --autostart
    python3 rulemock-server.py serve 1700000000000
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent / 'src'))

from rulemock.cli import main


if __name__ == '__main__':
    main()
