from dbagent.cli import main


main()
