import sys

from quickbuild.cli import main

sys.exit(main())
