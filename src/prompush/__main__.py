"""Allow ``python -m prompush``."""

from prompush.cli import main

if __name__ == "__main__":
    main()
