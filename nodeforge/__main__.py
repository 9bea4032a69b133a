import sys

from nodeforge.cli import main

sys.exit(main())
