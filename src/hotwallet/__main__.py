import sys

from hotwallet.cli import main

if __name__ == "__main__":
    sys.exit(main())
