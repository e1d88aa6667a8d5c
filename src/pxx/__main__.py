from pxx.cli.main import run

run()
