"""
tests/
------
MamaCare - Maternal Health Dashboard - Test Package
---------------------------------------------------
pytest suites for the proxy, the request tracker and the dashboard layer.
No test talks to a real OpenMRS server or LLM: upstream traffic goes
through httpx.MockTransport and the LLM is patched out.

Test Modules:
    - test_request_tracker.py: loading flag, error signal, subscriptions
    - test_proxy_gateway.py: forwarding, error envelopes, config loading
    - test_serverless.py: single-invocation adapter
    - test_main.py: FastAPI routes (proxy, health, dashboard)
    - test_emr_models.py: record types and display fallbacks
    - test_openmrs_client.py: tracked REST / FHIR calls
    - test_openmrs_service.py: patient lookup and dashboard sections
    - test_health_advisory.py: eligibility rule, prompt, fallback
    - test_dashboard.py: dashboard assembly and per-section errors

Project: MamaCare - Maternal Health Dashboard
"""
