"""Allow ``python -m agentrelay``."""

from .app import main

main()
