#!/usr/bin/env python3
"""
TrueNAS Manage - Entry point for direct execution

This module allows the package to be run directly using:
python -m tnmanage
"""

import sys

from tnmanage.main import main

if __name__ == "__main__":
    sys.exit(main())
