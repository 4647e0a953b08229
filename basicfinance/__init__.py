"""
Basic finance collector for A-share stocks.

- finance_tools: line item resolution, report periods, YoY / QoQ growth
- sina_client: Sina Finance statement downloads
- fetch_basic_finance: command line entry point
"""
