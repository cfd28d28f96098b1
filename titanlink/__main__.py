#!/usr/bin/env python3
"""
Allow running the module directly: python -m titanlink
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
