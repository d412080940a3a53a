"""Entry point for ``python -m deployment_sync``."""

from .cli import main

if __name__ == "__main__":
    main()
