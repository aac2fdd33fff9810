from myhome._cli import main

main()
