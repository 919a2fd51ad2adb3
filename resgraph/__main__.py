"""Entry point for `python -m resgraph`.

Usage:
    python -m resgraph types
    python -m resgraph query k8s.pod name=mondoo namespace=default --manifest pod.yaml
"""

from __future__ import annotations

from resgraph.cli import cli

cli()
