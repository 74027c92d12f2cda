"""
Pytest configuration file.

Puts src/ on the Python path so `command_arbiter` imports without installing.
"""

import os
import sys

_project_root = os.path.dirname(os.path.abspath(__file__))
_src_path = os.path.join(_project_root, "src")

if _src_path not in sys.path:
    sys.path.insert(0, _src_path)
