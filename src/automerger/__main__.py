from automerger.cli import main


main()
