import sys

from tripmode.pipeline import main

if __name__ == "__main__":
    sys.exit(main())
