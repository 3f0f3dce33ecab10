#!/usr/bin/env python3
"""
Main entry point for virt-tool
"""
from virt_tool.cli import app


if __name__ == "__main__":
    app()
