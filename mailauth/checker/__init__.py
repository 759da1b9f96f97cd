"""
Checker package for the mail authentication analyzer.

Provides record evaluators for SPF, DKIM and DMARC, the shared tag parser
they use, and the dnspython resolver collaborator that feeds them.
"""
