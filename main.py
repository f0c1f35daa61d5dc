"""
hproxy - policy-gated HTTP reverse proxy
Main entry point for the application.
"""

import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from src.proxy.server import main  # noqa: E402


if __name__ == "__main__":
    main()
