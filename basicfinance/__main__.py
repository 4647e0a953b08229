import sys

from .fetch_basic_finance import main

sys.exit(main())
