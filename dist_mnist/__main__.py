### dist_mnist/__main__.py
## ``python -m dist_mnist`` runs one worker.

from .main import main

raise SystemExit(main())
