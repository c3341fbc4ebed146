"""
defbuilder package

Builds container artifacts from `*.def` files as a CLI-first utility: the root
`base_image.def` becomes `build/base_image.sif` via apptainer, every other
definition becomes a condatainer environment under `build/`.

Key responsibilities are split across modules:
- `config.py`: defaults, YAML config file and environment overrides
- `discovery.py`: deterministic scan for definition files
- `planner.py`: target naming, collision checks, staleness
- `commands.py`: external tool argv construction and subprocess execution
- `executor.py`: bounded parallel build of stale targets
- `cli.py`: CLI entrypoint and orchestration (config -> discover -> plan -> build)
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
