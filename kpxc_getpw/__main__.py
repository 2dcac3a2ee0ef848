from kpxc_getpw.cli import run

run()
