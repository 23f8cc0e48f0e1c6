from .collector import main

raise SystemExit(main())
