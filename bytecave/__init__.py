"""ByteCave package namespace: redirects imports to the flat repo layout."""
import os as _os

# Point bytecave's __path__ to the repo root so that
# `from bytecave.p2p import ...` resolves to `p2p/...` at the project root.
__path__ = [_os.path.dirname(_os.path.dirname(_os.path.abspath(__file__)))]

__version__ = "1.0.0"
