import sys

from cropledger.cli import main

sys.exit(main())
