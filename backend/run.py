# backend/run.py: servidor de desarrollo
#   python backend/run.py            (puerto 8000)
#   flask --app run sync-subscriptions
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from zona_pedidos import create_app

app = create_app()

if __name__ == '__main__':
    port = int(os.getenv('PORT', '8000'))
    app.run(debug=os.getenv('FLASK_DEBUG', '1') == '1', port=port)
