from ticketload.cli import main

raise SystemExit(main())
