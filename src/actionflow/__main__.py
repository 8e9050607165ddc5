from actionflow.cli import main

main()
