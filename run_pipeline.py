"""Run the spike analysis on a directory of extracted frames."""
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "src"))

from pipeline import main

if __name__ == "__main__":
    main()
