#!/usr/bin/env python3
"""
Development launcher for segment-relay.

- Forces DEV=1 (debug logging) unless already set
- Runs a recording session in the foreground (default: audio)
- Ctrl-C stops the session and waits for pending uploads
"""

import os
import sys

from segrelay import cli


def main():
    os.environ.setdefault("DEV", "1")
    argv = sys.argv[1:] or ["record"]
    print(f"[dev] segrelay {' '.join(argv)} (Ctrl-C to stop)")
    return cli.main(argv)


if __name__ == "__main__":
    sys.exit(main())
