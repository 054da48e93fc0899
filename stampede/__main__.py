#!/usr/bin/env python3
"""
Main entry point for running stampede as a module.

Usage:
    python3 -m stampede run scripts/smoke.py
    python3 -m stampede validate scripts/smoke.py
    python3 -m stampede report --input summary.json --format markdown
"""

from .cli import main

if __name__ == "__main__":
    main()
