"""Entry point for `python -m kubemirror`.

Usage:
    KUBEMIRROR_SOURCES=services,configmaps python -m kubemirror
"""

from __future__ import annotations

import asyncio

from kubemirror.app import main

asyncio.run(main())
