# gen_token.py: token de prueba para llamar /api/billing/* en local
#   pip install -e .  &&  python gen_token.py <user_id> <email>
import os
import sys

from dotenv import load_dotenv
from zona_pedidos.security.tokens import mint_user_token

load_dotenv()
user_id = sys.argv[1] if len(sys.argv) > 1 else "00000000-0000-0000-0000-000000000015"
email = sys.argv[2] if len(sys.argv) > 2 else "dev@zonadepedidos.com.br"
print(mint_user_token(user_id, email, os.getenv("JWT_SECRET_KEY", "cambia-esta-clave-en-produccion"),
                      audience=os.getenv("JWT_AUDIENCE", "authenticated")))
