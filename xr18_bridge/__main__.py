import sys

from xr18_bridge.cli import main

sys.exit(main())
