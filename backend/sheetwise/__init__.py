"""Top-level package for the receipt sheet processing backend.

A single photographed sheet may hold several paper receipts. This
package splits such a sheet into per-receipt images, extracts
structured financial data from each, persists the results and flags
receipts that look like duplicates of ones already on file for the
same user.

The heavy lifting happens in a Dramatiq worker. To run it locally:

```bash
dramatiq sheetwise.worker --threads 5
```

Configuration is read from environment variables or a ``.env`` file
at the repository root (see :mod:`sheetwise.core.config`).
"""

__all__: list[str] = []
