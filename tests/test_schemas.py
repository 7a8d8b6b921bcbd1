from datetime import date

import pytest
from pydantic import ValidationError

from schemas import (
    CATEGORIA_FIELDS,
    GASTO_FIELDS,
    TRANSACCION_FIELDS,
    TransaccionIn,
    remap_fields,
)


class TestRemapFields:
    """Tests for storage-to-API field renaming."""

    def test_transaccion_row(self):
        row = {
            "id": 7,
            "fecha": date(2024, 1, 15),
            "tipo": "Egreso",
            "detalle": "Almuerzo",
            "monto": 40.0,
            "categoria_id": 1,
            "categoria_nombre": "Comida",
        }

        assert remap_fields(row, TRANSACCION_FIELDS) == {
            "Id": 7,
            "Fecha": date(2024, 1, 15),
            "Tipo": "Egreso",
            "Detalle": "Almuerzo",
            "Monto": 40.0,
            "CategoriaId": 1,
            "CategoriaNombre": "Comida",
        }

    def test_null_category_is_kept(self):
        row = {
            "id": 1,
            "fecha": date(2024, 1, 1),
            "tipo": "Ingreso",
            "detalle": None,
            "monto": 10.0,
            "categoria_id": None,
            "categoria_nombre": None,
        }

        mapped = remap_fields(row, TRANSACCION_FIELDS)

        assert mapped["CategoriaId"] is None
        assert mapped["CategoriaNombre"] is None

    def test_extra_columns_are_dropped(self):
        row = {"id": 1, "nombre": "Comida", "creado": "ayer"}

        assert remap_fields(row, CATEGORIA_FIELDS) == {"Id": 1, "Nombre": "Comida"}

    def test_missing_column_raises(self):
        with pytest.raises(KeyError):
            remap_fields({"categoria": "Comida"}, GASTO_FIELDS)


class TestTransaccionIn:
    def test_parses_dashboard_payload(self):
        payload = TransaccionIn(tipo="Ingreso", categoriaId=3, detalle="Sueldo", monto="1500.50", fecha="2024-02-01")

        assert payload.monto == 1500.50
        assert payload.fecha == date(2024, 2, 1)

    def test_category_and_detail_are_optional(self):
        payload = TransaccionIn(tipo="Egreso", monto=5, fecha="2024-02-01")

        assert payload.categoriaId is None
        assert payload.detalle is None

    @pytest.mark.parametrize(
        "overrides",
        [
            {"tipo": "Otro"},
            {"monto": -1},
            {"fecha": "ayer"},
        ],
    )
    def test_rejects_invalid_values(self, overrides):
        data = {"tipo": "Egreso", "monto": 5, "fecha": "2024-02-01", **overrides}

        with pytest.raises(ValidationError):
            TransaccionIn(**data)
