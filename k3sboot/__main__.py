# pylint: disable=missing-docstring
from k3sboot.k3sboot import main

if __name__ == '__main__':
    main()
