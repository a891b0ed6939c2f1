from __future__ import annotations

from services_runtime.cli.main import main

raise SystemExit(main())
