from streamrelay.cli import app

app(prog_name="streamrelay")
