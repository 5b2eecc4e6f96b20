from dispatcher.main import run

run()
