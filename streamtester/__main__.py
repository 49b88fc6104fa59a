from streamtester.cli import cli

cli()
