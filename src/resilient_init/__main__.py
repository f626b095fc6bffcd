from resilient_init.cli import main

raise SystemExit(main())
