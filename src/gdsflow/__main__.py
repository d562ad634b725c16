from gdsflow.cli import main

raise SystemExit(main())
