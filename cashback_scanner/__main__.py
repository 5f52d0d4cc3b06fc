from cashback_scanner.cli import app

app()
