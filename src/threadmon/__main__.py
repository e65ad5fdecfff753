from threadmon.cli import main

raise SystemExit(main())
