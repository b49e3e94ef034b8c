from andrena.cli import run

run()
