"""Entry point for `python -m sim_remote`."""

from .cli import main

if __name__ == "__main__":
    main()
