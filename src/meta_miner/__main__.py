"""Allow running as ``python -m meta_miner``."""

from meta_miner.cli import main

if __name__ == "__main__":
    main()
