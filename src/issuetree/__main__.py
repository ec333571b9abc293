from issuetree.cli.main import app

app()
