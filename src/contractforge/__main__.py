from contractforge.cli import main

raise SystemExit(main())
