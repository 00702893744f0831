"""Root conftest.py for pytest.

Puts the project root on sys.path so ``scripts.provisioning`` imports
without an editable install.
"""
import os
import sys

project_root = os.path.dirname(os.path.abspath(__file__))
if project_root not in sys.path:
    sys.path.insert(0, project_root)
