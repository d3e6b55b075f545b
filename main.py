import sys

from prodcons.cli import main

if __name__ == "__main__":
    print("Starting producer/consumer run...")
    sys.exit(main())
