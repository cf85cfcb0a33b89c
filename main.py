"""
Main entry point for SMC Lab
"""
import sys

from smclab.cli import main

if __name__ == '__main__':
    sys.exit(main())
