"""Allow ``python -m libvirt_provider``."""

from libvirt_provider.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
