"""Conjunto de dados reutilizável para cenários de teste do motor de conversas."""

CLIENT_ID = "cliente-ana"
PROFESSIONAL_ID = "prof-bruno"
OTHER_USER_ID = "intruso-carlos"
SERVICE_ID = "servico-pintura"

VALID_CPF = "529.982.247-25"
VALID_CPF_DIGITS = "52998224725"
INVALID_CPF = "123.456.789-00"

PAINTING_QUOTE = {
    "title": "Pintura de parede",
    "price": "250.00",
    "description": "Pintura de uma parede de 12m² com tinta acrílica",
}

CLIENT_PROFILE = {
    "full_name": "Ana Souza",
    "email": "ana@example.com",
    "phone": "11988887777",
}

ABACATEPAY_CREATE_RESPONSE = {
    "data": {
        "id": "pix_char_123456",
        "amount": 25000,
        "status": "PENDING",
        "brCode": "00020101021226950014br.gov.bcb.pix",
        "brCodeBase64": "data:image/png;base64,iVBORw0KGgo=",
        "expiresAt": "2026-03-01T15:00:00.000Z",
    },
    "error": None,
}
