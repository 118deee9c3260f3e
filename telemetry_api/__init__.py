"""Servicio de ingesta de telemetría de dispositivos IoT.

Recibe lotes de lecturas por HTTP, autoriza con caché TTL + validación
contra BD, persiste y notifica en tiempo real a los dashboards (SSE).
"""
