import sys

from scribe.interfaces.cli import main

sys.exit(main())
