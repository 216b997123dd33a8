#!/usr/bin/env python3
"""Command-line runner"""
from bfrg.cli import main

if __name__ == '__main__':
    main()
