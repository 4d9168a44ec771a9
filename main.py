#!/usr/bin/env python3
"""
Main entry point for the crawler stages.
"""

import sys

from stagecrawler.app import main


if __name__ == '__main__':
    sys.exit(main())
