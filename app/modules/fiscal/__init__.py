"""
Módulo fiscal

Emisión y reconciliación de documentos fiscales brasileños (NF-e, NFC-e,
NFS-e y NFS-e Nacional) vía Focus NFe:
- Vault de certificados A1 con contraseña cifrada (envelope AES-256-GCM)
- Registro de integraciones por tenant
- Pipeline de envío con persistencia previa a la llamada al proveedor
- Reconciliación por consulta, webhook firmado y barrido periódico
- Bitácora append-only de eventos
"""
