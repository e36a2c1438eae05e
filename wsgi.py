import os

from app import create_app

app = create_app(os.environ.get('FLASK_CONFIG', 'production'))


def main():
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port)


if __name__ == '__main__':
    main()
