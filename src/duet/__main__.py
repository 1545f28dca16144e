"""Allow `python -m duet`."""

from .main import main

if __name__ == "__main__":
    main()
