import sys

from uvify.cli import main

sys.exit(main())
