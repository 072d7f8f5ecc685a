"""AMI: the Asterisk Manager Interface client.

Data flow: socket bytes -> BlockFramer -> ResponseCorrelator, which hands
correlated messages to the waiting request and everything else to the
EventDispatcher.
"""
