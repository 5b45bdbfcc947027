"""
Shade - Run the relay server with ``python -m shade``.
"""

from .server import main

if __name__ == "__main__":
    main()
