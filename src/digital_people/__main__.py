from __future__ import annotations

from digital_people.cli import main

if __name__ == "__main__":
    main()
