from app.revmgr import create_app

app = create_app()
