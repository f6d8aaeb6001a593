"""Allow running Convergent as a module: python -m convergent"""

from .cli import main

if __name__ == "__main__":
    main()
