from app.laft import create_app

app = create_app()
