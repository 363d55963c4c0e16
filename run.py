#!/usr/bin/env python3
"""
Entry point for running Feed Relay from a source checkout.
"""
import sys

from feedrelay.main import main

if __name__ == "__main__":
    sys.exit(main())
