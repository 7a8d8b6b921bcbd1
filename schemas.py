"""
API Schemas

Request bodies use the lowercase names the dashboard sends; responses use the
capitalized names it expects (Id, Fecha, ...). Storage columns are lowercase
snake_case, so rows go through remap_fields() before leaving the API.
"""

from datetime import date
from typing import Any, Dict, Literal, Mapping, Optional

from pydantic import BaseModel, Field

TIPO_INGRESO = "Ingreso"
TIPO_EGRESO = "Egreso"

# storage column -> API field
TRANSACCION_FIELDS = {
    "id": "Id",
    "fecha": "Fecha",
    "tipo": "Tipo",
    "detalle": "Detalle",
    "monto": "Monto",
    "categoria_id": "CategoriaId",
    "categoria_nombre": "CategoriaNombre",
}

CATEGORIA_FIELDS = {
    "id": "Id",
    "nombre": "Nombre",
}

GASTO_FIELDS = {
    "categoria": "Categoria",
    "total": "Total",
}


def remap_fields(row: Mapping[str, Any], field_map: Mapping[str, str]) -> Dict[str, Any]:
    """Rename the keys of a result row according to field_map.

    Every key in field_map must be present in the row; columns not named in
    the map are dropped.
    """
    return {api_name: row[column] for column, api_name in field_map.items()}


# ----------------------------------------------------------------------------
# Requests
# ----------------------------------------------------------------------------
class LoginIn(BaseModel):
    usuario: str
    password: str


class TransaccionIn(BaseModel):
    tipo: Literal["Ingreso", "Egreso"]
    categoriaId: Optional[int] = None
    detalle: Optional[str] = None
    monto: float = Field(..., ge=0)
    fecha: date


# ----------------------------------------------------------------------------
# Responses
# ----------------------------------------------------------------------------
class SuccessOut(BaseModel):
    success: bool


class MessageOut(BaseModel):
    message: str


class UserSnapshot(BaseModel):
    id: int
    usuario: str
    nombre: Optional[str] = None
    rol: str


class SessionOut(BaseModel):
    loggedIn: bool
    user: Optional[UserSnapshot] = None


class CategoriaOut(BaseModel):
    Id: int
    Nombre: str


class TransaccionOut(BaseModel):
    Id: int
    Fecha: date
    Tipo: str
    Detalle: Optional[str] = None
    Monto: float
    CategoriaId: Optional[int] = None
    CategoriaNombre: Optional[str] = None


class ResumenOut(BaseModel):
    TotalIngresos: float
    TotalEgresos: float
    Balance: float


class GastoCategoriaOut(BaseModel):
    Categoria: str
    Total: float
