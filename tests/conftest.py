import os
import sys


# `apps/` is not an installed package in a plain checkout; put the repository
# root on sys.path so tests can import apps.server.app and streamgen directly.
_REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _REPO_ROOT not in sys.path:
    sys.path.insert(0, _REPO_ROOT)
