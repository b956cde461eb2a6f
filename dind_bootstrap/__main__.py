import sys

from dind_bootstrap.scripts.bootstrap import main

if __name__ == "__main__":
    sys.exit(main())
