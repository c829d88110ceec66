import sys

from check_orchestrator.cli import main

sys.exit(main())
