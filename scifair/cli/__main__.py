import sys

from scifair.cli import main

sys.exit(main())
