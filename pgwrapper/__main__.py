"""Allow ``python -m pgwrapper <postgres args>``."""

from pgwrapper.wrapper import main

main()
