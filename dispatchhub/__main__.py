"""Allow `python -m dispatchhub`."""

from dispatchhub.daemon import run

if __name__ == "__main__":
    run()
