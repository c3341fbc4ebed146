from defbuilder.cli import main

raise SystemExit(main())
