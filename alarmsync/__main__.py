"""Entry point for ``python -m alarmsync``."""

from alarmsync.app import main

if __name__ == "__main__":
    main()
