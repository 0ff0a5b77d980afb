"""
tests/
------
ClaimBridge — Test Package
--------------------------
Test suites for the Blue Button consent broker and claims normalizer.

Test Modules:
    - test_crypto_vault.py: AES-256-GCM envelopes, legacy envelopes, tamper detection
    - test_pkce.py: verifier / challenge generation
    - test_consent_store.py: SQLite consent persistence and code registry
    - test_bluebutton_client.py: token endpoint and FHIR fan-out over MockTransport
    - test_oauth_flow.py: initiate / callback / rotation lifecycle
    - test_normalizers.py: FHIR accessors and per-category normalizers
    - test_claims_classifier.py: bundle bucketing and failure isolation
    - test_claims_service.py: ClaimsBroker rotation-conflict retries
    - test_main.py: FastAPI endpoints

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""
