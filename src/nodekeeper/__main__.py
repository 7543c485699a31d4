from nodekeeper.cli import main

main()
