from shelfscan.cli import main

main()
