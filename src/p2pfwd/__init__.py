"""Interactive session manager for peer-to-peer port forwarding.

Módulos:
- ``args`` divide linhas de comando em tokens.
- ``registry`` guarda portas abertas e conexões com seus cancelamentos.
- ``commands`` interpreta ``connect``/``disconnect``/``open``/``close``.
- ``session`` é o loop único que serializa comandos e sinais.
- ``forwarder`` define o contrato consumido pela sessão.
- ``direct``, ``relay`` e ``rendezvous_connection`` implementam o forwarder TCP.
- ``config`` carrega parâmetros de arquivo JSON e flags.
"""
