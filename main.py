#!/usr/bin/env python3
"""
Development launcher for yaptabber.

- Runs the recorder daemon in the foreground
- Ctrl-C exits cleanly (status 0); startup failures exit with status 1
"""

import sys

from yaptabber import recorder_daemon


if __name__ == "__main__":
    sys.exit(recorder_daemon.main())
