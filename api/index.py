import sys
import os

# Add the root directory to the path so that 'tablerate' can be imported
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tablerate.main import app

# Serverless entrypoint
handler = app
