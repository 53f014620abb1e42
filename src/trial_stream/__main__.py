"""trial-stream 入口。

支持：python -m trial_stream -- CMD [ARGS...]
"""

import sys

from .app import main

if __name__ == "__main__":
    sys.exit(main())
