"""Dummy entry point script for the Smithery package.

Its primary purpose is to provide an entrypoint for PyInstaller.

You may invoke Smithery from this folder with `python runme.py`.

"""
import sys

import smithery.main

sys.exit(smithery.main.main())
