import json

MERCHANT_KEY = "mk_test_alpha"
OTHER_MERCHANT_KEY = "mk_test_beta"
ADMIN_TOKEN = "admin-test-token"

STRIPE_OK = {
    "provider": "STRIPE",
    "enabled": True,
    "config": {"secretKey": "sk_test_123", "publishableKey": "pk_test_123"},
}
ADYEN_OK = {
    "provider": "ADYEN",
    "enabled": True,
    "config": {"apiKey": "ak_123", "merchantAccount": "AcmeECOM", "clientKey": "test_CK"},
}


def write_providers(path, providers):
    path.write_text(json.dumps({"providers": providers}))
    return str(path)
