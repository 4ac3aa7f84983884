#!/usr/bin/env python3
"""
callbridge - Main Entry Point

Runs the operator CLI when the package is executed as a module.
"""

from .cli import app

if __name__ == "__main__":
    app()
