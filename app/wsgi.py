from app.ygops import create_app

app = create_app()
