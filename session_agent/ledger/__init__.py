"""
Ledger access: session codec, instruction builders, receipt verification,
the JSON-RPC gateway client and the HTTP position oracle.
"""
