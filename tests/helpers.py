"""Helpers shared by the API tests."""

import asyncio

from sqlalchemy import text

ADMIN = ("admin", "admin123")
VIEWER = ("lector", "lector123")
HASHED = ("cifrado", "secreto")


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def login(client, credentials):
    usuario, password = credentials
    return client.post("/api/login", json={"usuario": usuario, "password": password})


def run_sql(engine, statement, params=None):
    """Execute a statement outside the app, committing it."""

    async def _run():
        async with engine.begin() as conn:
            await conn.execute(text(statement), params or {})

    asyncio.run(_run())


def transaccion(tipo="Egreso", categoria_id=1, detalle="Almuerzo", monto=40, fecha="2024-01-15"):
    return {
        "tipo": tipo,
        "categoriaId": categoria_id,
        "detalle": detalle,
        "monto": monto,
        "fecha": fecha,
    }
